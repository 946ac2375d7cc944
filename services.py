from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Union
from zoneinfo import ZoneInfo

import bcrypt

from aggregation import (
    CategoryRollup,
    CorruptDataError,
    TREND_MONTHS,
    amount_cents,
    build_category_forest,
    id_key,
    index_by_id,
    latest_timestamp,
    parse_timestamp,
    partition_by_type,
    recent_months,
    rollup_hierarchy,
    total_cents,
    totals_by_category,
    totals_by_month,
)
from config import get_settings
from fx_rates import (
    ExchangeRates,
    ExchangeRateService,
    amount_to_eur_cents,
    cents_to_amount,
    normalize_currency_code,
    project_setting_key,
    user_setting_key,
    RATE_NAMES,
)
from models import MAX_CATEGORY_LEVEL, CurrencyCode, NoteContentType, ProjectRole
from row_store import Row, RowStore
from schemas import (
    CategoryAmount,
    CategoryIn,
    CategoryNode,
    DeletionSummary,
    GlobalStats,
    MemberIn,
    MonthAmount,
    NoteIn,
    PinChangeIn,
    ProjectIn,
    ProjectStats,
    RatesIn,
    TransactionIn,
    TransactionView,
    Unauthorized,
    UserIn,
)

logger = logging.getLogger(__name__)

ADMIN_NAME = "admin"
ADMIN_SETTING_KEY = "admin_user_id"
PIN_HASH_ROUNDS = 12

WRITE_ROLES = frozenset({ProjectRole.owner, ProjectRole.member})


def _now() -> str:
    return datetime.utcnow().isoformat()


def same_id(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    return id_key(left) == id_key(right)


def hash_pin(pin: str) -> str:
    salt = bcrypt.gensalt(rounds=PIN_HASH_ROUNDS)
    return bcrypt.hashpw(pin.encode("utf-8"), salt).decode("utf-8")


def verify_pin(pin: str, pin_hash: str) -> bool:
    try:
        return bcrypt.checkpw(pin.encode("utf-8"), pin_hash.encode("utf-8"))
    except ValueError:
        return False


def _public_user(row: Mapping[str, Any]) -> Row:
    return {key: value for key, value in row.items() if key != "pin_hash"}


def authorized_project_ids(store: RowStore, user_id: Any) -> list[Any]:
    """Ids of the projects ``user_id`` created or is a member of."""
    found: dict[str, Any] = {}
    for row in store.projects.where("created_by").equals(user_id).to_array():
        found[id_key(row["id"])] = row["id"]
    for row in store.project_users.where("user_id").equals(user_id).to_array():
        found.setdefault(id_key(row["project_id"]), row["project_id"])
    return list(found.values())


def project_role(
    store: RowStore, project: Mapping[str, Any], user_id: Any
) -> Optional[ProjectRole]:
    if user_id is None:
        return None
    if same_id(project["created_by"], user_id):
        return ProjectRole.owner
    membership = store.project_users.get((project["id"], user_id))
    if membership is None:
        return None
    return ProjectRole(membership["role"])


def _require_project(
    store: RowStore,
    project_id: Any,
    user_id: Any,
    roles: Iterable[ProjectRole] = WRITE_ROLES,
) -> Row:
    project = store.projects.get(project_id)
    if project is None:
        raise ValueError("Project not found")
    role = project_role(store, project, user_id)
    if role is None:
        raise PermissionError("Not a member of this project")
    if role not in set(roles):
        raise PermissionError(f"Role {role.value} cannot modify this project")
    return project


def _readable_project(store: RowStore, project_id: Any, user_id: Any) -> Optional[Row]:
    project = store.projects.get(project_id)
    if project is None or project_role(store, project, user_id) is None:
        return None
    return project


def enrich_transactions(
    store: RowStore,
    rows: list[Row],
    user_id: Any,
    currency: Optional[CurrencyCode] = None,
    rates: Optional[ExchangeRates] = None,
) -> list[TransactionView]:
    """Join names, note flags and a display amount onto raw transaction rows.

    Without an explicit ``currency`` each row is shown in its project's
    currency with that project's rates.
    """
    if not rows:
        return []

    notes_by_txn: dict[str, list[Row]] = defaultdict(list)
    for note in store.notes.where("transaction_id").any_of([r["id"] for r in rows]).to_array():
        notes_by_txn[id_key(note["transaction_id"])].append(note)

    def unique(values: Iterable[Any]) -> list[Any]:
        return list({id_key(v): v for v in values if v is not None}.values())

    projects = index_by_id(
        store.projects.where("id").any_of(unique(r["project_id"] for r in rows)).to_array()
    )
    users = index_by_id(
        store.users.where("id").any_of(unique(r["user_id"] for r in rows)).to_array()
    )
    categories = index_by_id(
        store.categories.where("id")
        .any_of(unique(r.get("category_id") for r in rows))
        .to_array()
    )
    missing_parents = [
        parent_id
        for parent_id in unique(c.get("parent_id") for c in categories.values())
        if id_key(parent_id) not in categories
    ]
    categories.update(
        index_by_id(store.categories.where("id").any_of(missing_parents).to_array())
    )

    rate_service = ExchangeRateService(store)
    project_rates: dict[str, ExchangeRates] = {}
    views: list[TransactionView] = []
    for row in rows:
        project_key = id_key(row["project_id"])
        project = projects.get(project_key)
        project_currency = normalize_currency_code(project["currency"]) if project else None
        row_currency = currency or project_currency or CurrencyCode.eur
        row_rates = rates
        if row_rates is None:
            if project_key not in project_rates:
                project_rates[project_key] = rate_service.rates_for_project(
                    row["project_id"], user_id
                )
            row_rates = project_rates[project_key]

        category_id = row.get("category_id")
        category = categories.get(id_key(category_id)) if category_id is not None else None
        parent = None
        if category is not None and category.get("parent_id") is not None:
            parent = categories.get(id_key(category["parent_id"]))
        author = users.get(id_key(row["user_id"]))
        notes = notes_by_txn.get(id_key(row["id"]), [])
        kinds = {NoteContentType(note["content_type"]) for note in notes}

        views.append(
            TransactionView(
                id=row["id"],
                project_id=row["project_id"],
                user_id=row["user_id"],
                category_id=category_id,
                type=row["type"],
                amount_cents=amount_cents(row),
                amount=cents_to_amount(amount_cents(row), row_currency, row_rates),
                title=row["title"],
                description=row.get("description"),
                created_at=parse_timestamp(row.get("created_at")),
                project_name=project["name"] if project else None,
                project_icon=project.get("icon") if project else None,
                project_color=project.get("color") if project else None,
                project_currency=project_currency,
                user_name=author["name"] if author else None,
                category_name=category["name"] if category else None,
                parent_category_name=parent["name"] if parent else None,
                has_text=NoteContentType.text in kinds,
                has_document=any(
                    note["content_type"] == NoteContentType.text.value and note.get("file_path")
                    for note in notes
                ),
                has_image=NoteContentType.image in kinds,
                has_audio=NoteContentType.audio in kinds,
            )
        )
    return views


def _newest_first(rows: list[Row]) -> list[Row]:
    return sorted(
        rows,
        key=lambda r: (id_key(r.get("created_at") or ""), id_key(r["id"])),
        reverse=True,
    )


class UserService:
    def __init__(self, store: RowStore, user_id: Optional[Any] = None) -> None:
        self.store = store
        self.user_id = user_id

    def get(self, user_id: Any) -> Row:
        user = self.store.users.get(user_id)
        if not user:
            raise ValueError("User not found")
        return _public_user(user)

    def get_by_name(self, name: str) -> Optional[Row]:
        wanted = name.strip().lower()
        for user in self.store.users.to_array():
            if user["name"].strip().lower() == wanted:
                return user
        return None

    def list_all(self) -> list[Row]:
        self._require_admin()
        return [_public_user(user) for user in self.store.users.to_array()]

    def create(self, data: UserIn) -> Row:
        if self.get_by_name(data.name):
            raise ValueError("User with this name already exists")
        user_id = self.store.users.add(
            {
                "name": data.name,
                "pin_hash": hash_pin(data.pin),
                "is_admin": False,
                "created_at": _now(),
            }
        )
        logger.info(f"user_created: user_id={user_id}")
        return self.get(user_id)

    def authenticate(self, name: str, pin: str) -> Row:
        user = self.get_by_name(name)
        if not user:
            raise ValueError("User not found")
        if not verify_pin(pin, user["pin_hash"]):
            logger.warning(f"login_failed: user_id={user['id']}")
            raise ValueError("Incorrect PIN")
        return _public_user(user)

    def change_pin(self, data: PinChangeIn) -> None:
        user = self.store.users.get(self.user_id)
        if not user:
            raise ValueError("User not found")
        if not verify_pin(data.current_pin, user["pin_hash"]):
            raise ValueError("Incorrect PIN")
        self.store.users.where("id").equals(user["id"]).update(
            {"pin_hash": hash_pin(data.new_pin)}
        )
        logger.info(f"pin_changed: user_id={user['id']}")

    def admin_user_id(self) -> Optional[Any]:
        setting = self.store.settings.get(ADMIN_SETTING_KEY)
        if setting:
            admin = self.store.users.get(setting["value"])
            if admin:
                return admin["id"]
        admin = self.store.users.where("is_admin").equals(True).first()
        return admin["id"] if admin else None

    def ensure_admin(self) -> Any:
        """Make sure exactly one admin user exists and return its id."""
        admin_id = self.admin_user_id()
        if admin_id is None:
            existing = self.get_by_name(ADMIN_NAME)
            if existing:
                admin_id = existing["id"]
            else:
                admin_id = self.store.users.add(
                    {
                        "name": ADMIN_NAME,
                        "pin_hash": hash_pin(get_settings().admin_pin),
                        "is_admin": True,
                        "created_at": _now(),
                    }
                )
                logger.info(f"admin_created: user_id={admin_id}")

        self.store.users.where("id").equals(admin_id).update({"is_admin": True})
        for user in self.store.users.where("is_admin").equals(True).to_array():
            if not same_id(user["id"], admin_id):
                logger.warning(f"admin_demoted: user_id={user['id']}")
                self.store.users.where("id").equals(user["id"]).update({"is_admin": False})
        self.store.settings.put(
            {"key": ADMIN_SETTING_KEY, "value": str(admin_id), "updated_at": _now()}
        )
        return admin_id

    def _require_admin(self) -> Any:
        admin_id = self.admin_user_id()
        if admin_id is None:
            raise ValueError("No admin user is configured")
        if not same_id(self.user_id, admin_id):
            raise PermissionError("Only the admin can manage users")
        return admin_id

    def delete_user(self, target_id: Any) -> DeletionSummary:
        """Delete a user, handing their projects and transactions to the admin.

        All checks run before the first write; the writes themselves share one
        atomic unit of the store.
        """
        admin_id = self._require_admin()
        if same_id(target_id, admin_id):
            raise ValueError("The admin user cannot be deleted")
        target = self.store.users.get(target_id)
        if not target:
            raise ValueError("User not found")

        user_id = target["id"]
        with self.store.atomic():
            projects = (
                self.store.projects.where("created_by")
                .equals(user_id)
                .update({"created_by": admin_id})
            )
            transactions = (
                self.store.transactions.where("user_id")
                .equals(user_id)
                .update({"user_id": admin_id})
            )
            memberships = self.store.project_users.where("user_id").equals(user_id).delete()
            self.store.settings.where("key").any_of(
                [user_setting_key(user_id, name) for name in ("currency",) + RATE_NAMES]
            ).delete()
            self.store.users.where("id").equals(user_id).delete()

        logger.info(
            f"user_deleted: user_id={user_id} admin_id={admin_id} "
            f"projects={projects} transactions={transactions} memberships={memberships}"
        )
        return DeletionSummary(
            user_id=user_id,
            admin_id=admin_id,
            projects_reassigned=projects,
            transactions_reassigned=transactions,
            memberships_removed=memberships,
        )


class ProjectService:
    def __init__(self, store: RowStore, user_id: Any) -> None:
        self.store = store
        self.user_id = user_id

    def _check_unique_name(self, name: str, exclude_id: Optional[Any] = None) -> None:
        for row in self.store.projects.where("created_by").equals(self.user_id).to_array():
            if same_id(row["id"], exclude_id):
                continue
            if row["name"].strip().lower() == name.lower():
                raise ValueError("Project with this name already exists")

    def create(self, data: ProjectIn) -> Row:
        if not self.store.users.get(self.user_id):
            raise ValueError("User not found")
        name = data.name.strip()
        self._check_unique_name(name)
        with self.store.atomic():
            project_id = self.store.projects.add(
                {
                    "name": name,
                    "description": data.description,
                    "icon": data.icon,
                    "color": data.color,
                    "currency": data.currency.value,
                    "created_by": self.user_id,
                    "created_at": _now(),
                }
            )
            self.store.project_users.add(
                {
                    "project_id": project_id,
                    "user_id": self.user_id,
                    "role": ProjectRole.owner.value,
                    "added_at": _now(),
                }
            )
        logger.info(f"project_created: project_id={project_id} user_id={self.user_id}")
        return self.store.projects.get(project_id)

    def list_for_user(self) -> list[Row]:
        ids = authorized_project_ids(self.store, self.user_id)
        roles = {
            id_key(row["project_id"]): row["role"]
            for row in self.store.project_users.where("user_id").equals(self.user_id).to_array()
        }
        projects = []
        for project in self.store.projects.where("id").any_of(ids).to_array():
            if same_id(project["created_by"], self.user_id):
                role = ProjectRole.owner.value
            else:
                role = roles.get(id_key(project["id"]), ProjectRole.viewer.value)
            projects.append({**project, "role": role})
        return projects

    def list_all(self) -> list[Row]:
        UserService(self.store, self.user_id)._require_admin()
        return self.store.projects.to_array()

    def get(self, project_id: Any) -> Union[Row, Unauthorized]:
        project = _readable_project(self.store, project_id, self.user_id)
        if project is None:
            return Unauthorized(project_id=project_id)
        return project

    def update(self, project_id: Any, data: ProjectIn) -> Row:
        project = _require_project(self.store, project_id, self.user_id, {ProjectRole.owner})
        name = data.name.strip()
        self._check_unique_name(name, exclude_id=project["id"])
        self.store.projects.where("id").equals(project["id"]).update(
            {
                "name": name,
                "description": data.description,
                "icon": data.icon,
                "color": data.color,
                "currency": data.currency.value,
            }
        )
        logger.info(f"project_updated: project_id={project['id']}")
        return self.store.projects.get(project["id"])

    def update_rates(self, project_id: Any, data: RatesIn) -> None:
        project = _require_project(self.store, project_id, self.user_id, {ProjectRole.owner})
        ExchangeRateService(self.store).set_project_rates(project["id"], data)

    def delete(self, project_id: Any) -> None:
        project = _require_project(self.store, project_id, self.user_id, {ProjectRole.owner})
        pid = project["id"]
        transaction_ids = [
            row["id"] for row in self.store.transactions.where("project_id").equals(pid).to_array()
        ]
        with self.store.atomic():
            self.store.notes.where("transaction_id").any_of(transaction_ids).delete()
            self.store.transactions.where("project_id").equals(pid).delete()
            self.store.categories.where("project_id").equals(pid).delete()
            self.store.project_users.where("project_id").equals(pid).delete()
            self.store.settings.where("key").any_of(
                [project_setting_key(pid, name) for name in RATE_NAMES]
            ).delete()
            self.store.projects.where("id").equals(pid).delete()
        logger.info(
            f"project_deleted: project_id={pid} transactions={len(transaction_ids)}"
        )

    def members(self, project_id: Any) -> Union[list[Row], Unauthorized]:
        project = _readable_project(self.store, project_id, self.user_id)
        if project is None:
            return Unauthorized(project_id=project_id)
        memberships = self.store.project_users.where("project_id").equals(project["id"]).to_array()
        users = index_by_id(
            self.store.users.where("id").any_of([m["user_id"] for m in memberships]).to_array()
        )
        return [
            {**m, "user_name": users[id_key(m["user_id"])]["name"]}
            for m in memberships
            if id_key(m["user_id"]) in users
        ]

    def add_member(self, project_id: Any, data: MemberIn) -> Row:
        project = _require_project(self.store, project_id, self.user_id, {ProjectRole.owner})
        if data.role == ProjectRole.owner:
            raise ValueError("A project has exactly one owner")
        user = self.store.users.get(data.user_id)
        if not user:
            raise ValueError("User not found")
        if project_role(self.store, project, user["id"]) is not None:
            raise ValueError("User is already a member of this project")
        self.store.project_users.add(
            {
                "project_id": project["id"],
                "user_id": user["id"],
                "role": data.role.value,
                "added_at": _now(),
            }
        )
        logger.info(
            f"member_added: project_id={project['id']} user_id={user['id']} role={data.role.value}"
        )
        return self.store.project_users.get((project["id"], user["id"]))

    def remove_member(self, project_id: Any, user_id: Any) -> None:
        project = _require_project(self.store, project_id, self.user_id, {ProjectRole.owner})
        if same_id(project["created_by"], user_id):
            raise ValueError("The project owner cannot be removed")
        membership = self.store.project_users.get((project["id"], user_id))
        if not membership:
            raise ValueError("User is not a member of this project")
        self.store.project_users.remove((project["id"], membership["user_id"]))
        logger.info(f"member_removed: project_id={project['id']} user_id={user_id}")


class CategoryService:
    def __init__(self, store: RowStore, user_id: Any) -> None:
        self.store = store
        self.user_id = user_id

    def create(self, project_id: Any, data: CategoryIn) -> Row:
        project = _require_project(self.store, project_id, self.user_id)
        level = 1
        parent_id = None
        if data.parent_id is not None:
            parent = self.store.categories.get(data.parent_id)
            if not parent or not same_id(parent["project_id"], project["id"]):
                raise ValueError("Parent category not found")
            level = int(parent["level"]) + 1
            if level > MAX_CATEGORY_LEVEL:
                raise ValueError(
                    f"Categories can only be nested {MAX_CATEGORY_LEVEL} levels deep"
                )
            parent_id = parent["id"]

        name = data.name.strip()
        for sibling in self.store.categories.where("project_id").equals(project["id"]).to_array():
            same_parent = (
                sibling.get("parent_id") is None
                if parent_id is None
                else same_id(sibling.get("parent_id"), parent_id)
            )
            if same_parent and sibling["name"].strip().lower() == name.lower():
                raise ValueError("Category with this name already exists")

        category_id = self.store.categories.add(
            {
                "project_id": project["id"],
                "name": name,
                "parent_id": parent_id,
                "level": level,
                "created_at": _now(),
            }
        )
        return self.store.categories.get(category_id)

    def list(self, project_id: Any) -> Union[list[Row], Unauthorized]:
        project = _readable_project(self.store, project_id, self.user_id)
        if project is None:
            return Unauthorized(project_id=project_id)
        rows = self.store.categories.where("project_id").equals(project["id"]).to_array()
        return sorted(rows, key=lambda r: (int(r["level"]), r["name"].lower()))

    def leaves(self, project_id: Any) -> Union[list[Row], Unauthorized]:
        rows = self.list(project_id)
        if isinstance(rows, Unauthorized):
            return rows
        parents = {id_key(r["parent_id"]) for r in rows if r.get("parent_id") is not None}
        return [r for r in rows if id_key(r["id"]) not in parents]


class TransactionService:
    def __init__(self, store: RowStore, user_id: Any) -> None:
        self.store = store
        self.user_id = user_id

    def create(self, data: TransactionIn) -> Row:
        project = _require_project(self.store, data.project_id, self.user_id)
        category_id = None
        if data.category_id is not None:
            category = self.store.categories.get(data.category_id)
            if not category or not same_id(category["project_id"], project["id"]):
                raise ValueError("Category not found")
            category_id = category["id"]

        currency = (
            data.currency
            or normalize_currency_code(project["currency"])
            or CurrencyCode.eur
        )
        rates = ExchangeRateService(self.store).rates_for_project(project["id"], self.user_id)
        cents = amount_to_eur_cents(data.amount, currency, rates)
        if cents <= 0:
            raise ValueError("Amount is too small")

        created_at = data.created_at or datetime.utcnow()
        if created_at.tzinfo is not None:
            # stored timestamps are naive UTC
            created_at = created_at.astimezone(timezone.utc).replace(tzinfo=None)
        transaction_id = self.store.transactions.add(
            {
                "project_id": project["id"],
                "user_id": self.user_id,
                "category_id": category_id,
                "type": data.type.value,
                "amount_cents": cents,
                "title": data.title.strip(),
                "description": data.description,
                "created_at": created_at.isoformat(),
            }
        )
        logger.info(
            f"transaction_created: transaction_id={transaction_id} project_id={project['id']} "
            f"type={data.type.value} amount_cents={cents}"
        )
        return self.store.transactions.get(transaction_id)

    def get(self, transaction_id: Any) -> Row:
        txn = self.store.transactions.get(transaction_id)
        if not txn or _readable_project(self.store, txn["project_id"], self.user_id) is None:
            raise ValueError("Transaction not found")
        return txn

    def delete(self, transaction_id: Any) -> None:
        txn = self.get(transaction_id)
        project = _require_project(self.store, txn["project_id"], self.user_id)
        if not same_id(txn["user_id"], self.user_id) and not same_id(
            project["created_by"], self.user_id
        ):
            raise PermissionError("Only the author or the project owner can delete this")
        with self.store.atomic():
            self.store.notes.where("transaction_id").equals(txn["id"]).delete()
            self.store.transactions.where("id").equals(txn["id"]).delete()
        logger.info(f"transaction_deleted: transaction_id={txn['id']}")

    def list_for_project(
        self, project_id: Any, currency: Optional[CurrencyCode] = None
    ) -> Union[list[TransactionView], Unauthorized]:
        project = _readable_project(self.store, project_id, self.user_id)
        if project is None:
            return Unauthorized(project_id=project_id)
        rows = self.store.transactions.where("project_id").equals(project["id"]).to_array()
        return enrich_transactions(self.store, _newest_first(rows), self.user_id, currency)

    def recent(self, limit: int = 10) -> list[TransactionView]:
        ids = authorized_project_ids(self.store, self.user_id)
        rows = self.store.transactions.where("project_id").any_of(ids).to_array()
        return enrich_transactions(self.store, _newest_first(rows)[:limit], self.user_id)


class NoteService:
    def __init__(self, store: RowStore, user_id: Any) -> None:
        self.store = store
        self.user_id = user_id

    def add(self, transaction_id: Any, data: NoteIn) -> Row:
        txn = TransactionService(self.store, self.user_id).get(transaction_id)
        _require_project(self.store, txn["project_id"], self.user_id)
        note_id = self.store.notes.add(
            {
                "transaction_id": txn["id"],
                "content_type": data.content_type.value,
                "content": data.content,
                "file_path": data.file_path,
                "created_at": _now(),
            }
        )
        return self.store.notes.get(note_id)

    def list_for_transaction(self, transaction_id: Any) -> list[Row]:
        txn = TransactionService(self.store, self.user_id).get(transaction_id)
        return self.store.notes.where("transaction_id").equals(txn["id"]).to_array()


def _category_amounts(
    totals: dict[str, int], currency: CurrencyCode, rates: ExchangeRates
) -> list[CategoryAmount]:
    grand_total = sum(totals.values())
    ordered = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return [
        CategoryAmount(
            name=name,
            amount=cents_to_amount(cents, currency, rates),
            percent=(cents / grand_total * 100) if grand_total else 0,
        )
        for name, cents in ordered
    ]


def _month_amounts(
    totals: dict[str, int], currency: CurrencyCode, rates: ExchangeRates
) -> list[MonthAmount]:
    return [
        MonthAmount(month=month, amount=cents_to_amount(cents, currency, rates))
        for month, cents in totals.items()
    ]


def limit_to_recent_months(stats: GlobalStats, limit: int = TREND_MONTHS) -> GlobalStats:
    """Keep only the ``limit`` most recent months present in either series."""
    window = set(
        recent_months(
            (m.month for m in stats.expenses_by_month),
            (m.month for m in stats.budgets_by_month),
            limit=limit,
        )
    )
    return stats.model_copy(
        update={
            "expenses_by_month": [m for m in stats.expenses_by_month if m.month in window],
            "budgets_by_month": [m for m in stats.budgets_by_month if m.month in window],
        }
    )


class StatisticsService:
    """Dashboard and drill-down statistics for one calling user.

    Sums are computed from canonical EUR cents and converted to the display
    currency last, with rates read fresh on every call. Dashboard figures
    degrade to zero on any failure, logged; the category hierarchy raises
    ``CorruptDataError`` for a broken category graph.
    """

    def __init__(self, store: RowStore, user_id: Any) -> None:
        self.store = store
        self.user_id = user_id
        self.rates = ExchangeRateService(store)
        self.tz = ZoneInfo(get_settings().timezone)

    def _money(self, cents: int, currency: CurrencyCode, rates: ExchangeRates) -> Decimal:
        return cents_to_amount(cents, currency, rates)

    def global_stats(self, currency: Optional[CurrencyCode] = None) -> GlobalStats:
        display = currency or CurrencyCode.eur
        try:
            display = currency or self.rates.user_currency(self.user_id)
            rates = self.rates.rates_for_user(self.user_id)
            project_ids = authorized_project_ids(self.store, self.user_id)
            if not project_ids:
                return GlobalStats(currency=display)

            rows = self.store.transactions.where("project_id").any_of(project_ids).to_array()
            project_count = self.store.projects.where("id").any_of(project_ids).count()
            expenses, budgets = partition_by_type(rows)
            total_expenses = self._money(total_cents(expenses), display, rates)
            total_budgets = self._money(total_cents(budgets), display, rates)
            return GlobalStats(
                currency=display,
                total_expenses=total_expenses,
                total_budgets=total_budgets,
                balance=total_budgets - total_expenses,
                transaction_count=len(rows),
                last_transaction_date=latest_timestamp(rows),
                project_count=project_count,
                expenses_by_month=_month_amounts(
                    totals_by_month(expenses, self.tz), display, rates
                ),
                budgets_by_month=_month_amounts(
                    totals_by_month(budgets, self.tz), display, rates
                ),
            )
        except Exception:
            logger.exception(f"global_stats_failed: user_id={self.user_id}")
            return GlobalStats(currency=display)

    def project_stats(
        self, project_id: Any, currency: Optional[CurrencyCode] = None
    ) -> Union[ProjectStats, Unauthorized]:
        display = currency or CurrencyCode.eur
        try:
            project = _readable_project(self.store, project_id, self.user_id)
            if project is None:
                return Unauthorized(project_id=project_id)
            display = currency or normalize_currency_code(project["currency"]) or CurrencyCode.eur
            rates = self.rates.rates_for_project(project["id"], self.user_id)

            rows = self.store.transactions.where("project_id").equals(project["id"]).to_array()
            categories = self.store.categories.where("project_id").equals(project["id"]).to_array()
            expenses, budgets = partition_by_type(rows)
            total_expenses = self._money(total_cents(expenses), display, rates)
            total_budgets = self._money(total_cents(budgets), display, rates)
            return ProjectStats(
                project_id=project["id"],
                currency=display,
                total_expenses=total_expenses,
                total_budgets=total_budgets,
                balance=total_budgets - total_expenses,
                expenses_by_category=_category_amounts(
                    totals_by_category(expenses, categories), display, rates
                ),
                budgets_by_category=_category_amounts(
                    totals_by_category(budgets, categories), display, rates
                ),
                transactions=enrich_transactions(
                    self.store, _newest_first(rows), self.user_id, display, rates
                ),
            )
        except Exception:
            logger.exception(
                f"project_stats_failed: project_id={project_id} user_id={self.user_id}"
            )
            return ProjectStats(project_id=project_id, currency=display)

    def project_category_hierarchy(
        self, project_id: Any, currency: Optional[CurrencyCode] = None
    ) -> Union[list[CategoryNode], Unauthorized]:
        try:
            project = _readable_project(self.store, project_id, self.user_id)
            if project is None:
                return Unauthorized(project_id=project_id)
            display = currency or normalize_currency_code(project["currency"]) or CurrencyCode.eur
            rates = self.rates.rates_for_project(project["id"], self.user_id)

            categories = sorted(
                self.store.categories.where("project_id").equals(project["id"]).to_array(),
                key=lambda r: (int(r["level"]), r["name"].lower()),
            )
            transactions = self.store.transactions.where("project_id").equals(project["id"]).to_array()
            forest = build_category_forest(categories)
            rollups = rollup_hierarchy(forest, transactions)
            return [self._node(rollup, display, rates) for rollup in rollups]
        except CorruptDataError:
            raise
        except Exception:
            logger.exception(
                f"category_hierarchy_failed: project_id={project_id} user_id={self.user_id}"
            )
            return []

    def _node(
        self, rollup: CategoryRollup, currency: CurrencyCode, rates: ExchangeRates
    ) -> CategoryNode:
        expense = self._money(rollup.expense_cents, currency, rates)
        return CategoryNode(
            id=rollup.id,
            name=rollup.name,
            level=rollup.level,
            parent_id=rollup.parent_id,
            value=expense,
            expense_value=expense,
            budget_value=self._money(rollup.budget_cents, currency, rates),
            children=[self._node(child, currency, rates) for child in rollup.children],
        )
