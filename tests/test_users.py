from decimal import Decimal

import pytest
from pydantic import ValidationError

from models import TransactionType
from row_store import SQLRowStore
from schemas import MemberIn, PinChangeIn, PreferencesIn, ProjectIn, TransactionIn, UserIn
from services import (
    ADMIN_SETTING_KEY,
    ProjectService,
    TransactionService,
    UserService,
)
from fx_rates import ExchangeRateService


def _store() -> SQLRowStore:
    store = SQLRowStore("sqlite:///:memory:")
    store.initialize()
    return store


def _snapshot(store):
    return {
        name: store.table(name).to_array()
        for name in ("users", "projects", "project_users", "transactions")
    }


def test_pin_must_be_four_digits() -> None:
    for pin in ("123", "12345", "abcd", "12 4"):
        with pytest.raises(ValidationError):
            UserIn(name="alice", pin=pin)


def test_names_are_unique_case_insensitively() -> None:
    store = _store()
    UserService(store).create(UserIn(name="Alice", pin="1234"))

    with pytest.raises(ValueError, match="already exists"):
        UserService(store).create(UserIn(name=" alice ", pin="9999"))


def test_authenticate_and_change_pin() -> None:
    store = _store()
    user = UserService(store).create(UserIn(name="alice", pin="1234"))
    assert "pin_hash" not in user

    assert UserService(store).authenticate("ALICE", "1234")["id"] == user["id"]
    with pytest.raises(ValueError, match="Incorrect PIN"):
        UserService(store).authenticate("alice", "0000")
    with pytest.raises(ValueError, match="not found"):
        UserService(store).authenticate("bob", "1234")

    UserService(store, user["id"]).change_pin(PinChangeIn(current_pin="1234", new_pin="4321"))

    assert UserService(store).authenticate("alice", "4321")["id"] == user["id"]


def test_ensure_admin_is_idempotent() -> None:
    store = _store()

    admin_id = UserService(store).ensure_admin()

    assert UserService(store).ensure_admin() == admin_id
    assert store.users.where("is_admin").equals(True).count() == 1
    assert store.settings.get(ADMIN_SETTING_KEY)["value"] == str(admin_id)
    assert UserService(store).authenticate("admin", "1234")["id"] == admin_id


def test_ensure_admin_keeps_a_single_admin() -> None:
    store = _store()
    admin_id = UserService(store).ensure_admin()
    rogue = UserService(store).create(UserIn(name="rogue", pin="1111"))["id"]
    store.users.where("id").equals(rogue).update({"is_admin": True})

    UserService(store).ensure_admin()

    admins = store.users.where("is_admin").equals(True).to_array()
    assert [row["id"] for row in admins] == [admin_id]


def test_delete_user_reassigns_projects_and_transactions_to_admin() -> None:
    store = _store()
    admin_id = UserService(store).ensure_admin()
    bob = UserService(store).create(UserIn(name="bob", pin="1234"))["id"]
    carol = UserService(store).create(UserIn(name="carol", pin="1234"))["id"]

    projects = ProjectService(store, bob)
    first = projects.create(ProjectIn(name="House"))["id"]
    second = projects.create(ProjectIn(name="Garden"))["id"]
    other = ProjectService(store, carol).create(ProjectIn(name="Trip"))["id"]
    ProjectService(store, carol).add_member(other, MemberIn(user_id=bob))
    for project_id in (first, first, second, second, other):
        TransactionService(store, bob).create(
            TransactionIn(
                project_id=project_id,
                type=TransactionType.expense,
                amount=Decimal("12.50"),
                title="Receipt",
            )
        )
    users_before = store.users.to_array()

    summary = UserService(store, admin_id).delete_user(bob)

    assert summary.projects_reassigned == 2
    assert summary.transactions_reassigned == 5
    assert summary.memberships_removed == 3
    assert len(store.users.to_array()) == len(users_before) - 1
    assert store.users.get(bob) is None
    assert {row["created_by"] for row in store.projects.where("id").any_of([first, second]).to_array()} == {admin_id}
    assert store.transactions.where("user_id").equals(admin_id).count() == 5
    assert store.transactions.where("user_id").equals(bob).count() == 0
    assert store.project_users.where("user_id").equals(bob).count() == 0
    assert store.projects.get(other)["created_by"] == carol


def test_deleting_the_admin_fails_without_side_effects() -> None:
    store = _store()
    admin_id = UserService(store).ensure_admin()
    bob = UserService(store).create(UserIn(name="bob", pin="1234"))["id"]
    ProjectService(store, bob).create(ProjectIn(name="House"))
    before = _snapshot(store)

    with pytest.raises(ValueError, match="cannot be deleted"):
        UserService(store, admin_id).delete_user(admin_id)
    with pytest.raises(ValueError, match="cannot be deleted"):
        UserService(store, admin_id).delete_user(str(admin_id))

    assert _snapshot(store) == before


def test_only_admin_can_delete_users() -> None:
    store = _store()
    UserService(store).ensure_admin()
    bob = UserService(store).create(UserIn(name="bob", pin="1234"))["id"]
    carol = UserService(store).create(UserIn(name="carol", pin="1234"))["id"]

    with pytest.raises(PermissionError):
        UserService(store, bob).delete_user(carol)
    with pytest.raises(PermissionError):
        UserService(store, bob).list_all()

    assert store.users.get(carol) is not None


def test_deleting_unknown_user_is_not_found() -> None:
    store = _store()
    admin_id = UserService(store).ensure_admin()

    with pytest.raises(ValueError, match="not found"):
        UserService(store, admin_id).delete_user(4242)


def test_failed_deletion_rolls_back(monkeypatch) -> None:
    store = _store()
    admin_id = UserService(store).ensure_admin()
    bob = UserService(store).create(UserIn(name="bob", pin="1234"))["id"]
    ProjectService(store, bob).create(ProjectIn(name="House"))
    before = _snapshot(store)

    original = store.users.selection

    def failing(field, values):
        selection = original(field, values)

        def boom():
            raise RuntimeError("disk full")

        selection.delete = boom
        return selection

    monkeypatch.setattr(store.users, "selection", failing)

    with pytest.raises(RuntimeError):
        UserService(store, admin_id).delete_user(bob)

    assert _snapshot(store) == before


def test_delete_user_drops_their_preferences() -> None:
    store = _store()
    admin_id = UserService(store).ensure_admin()
    bob = UserService(store).create(UserIn(name="bob", pin="1234"))["id"]
    carol = UserService(store).create(UserIn(name="carol", pin="1234"))["id"]
    preferences = PreferencesIn(currency="USD", eur_to_cfa=Decimal("650"), eur_to_usd=Decimal("1.1"))
    ExchangeRateService(store).set_user_preferences(bob, preferences)
    ExchangeRateService(store).set_user_preferences(carol, preferences)

    UserService(store, admin_id).delete_user(bob)

    keys = {row["key"] for row in store.settings.to_array()}
    assert not any(key.startswith(f"user:{bob}:") for key in keys)
    assert {f"user:{carol}:currency", f"user:{carol}:eur_to_usd"} <= keys
    assert ADMIN_SETTING_KEY in keys
