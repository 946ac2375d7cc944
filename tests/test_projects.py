from decimal import Decimal

import pytest

from models import NoteContentType, ProjectRole, TransactionType
from row_store import SQLRowStore
from schemas import (
    CategoryIn,
    MemberIn,
    NoteIn,
    ProjectIn,
    RatesIn,
    TransactionIn,
    Unauthorized,
    UserIn,
)
from services import (
    CategoryService,
    NoteService,
    ProjectService,
    TransactionService,
    UserService,
)


def _store() -> SQLRowStore:
    store = SQLRowStore("sqlite:///:memory:")
    store.initialize()
    return store


def _user(store, name: str):
    return UserService(store).create(UserIn(name=name, pin="1234"))["id"]


def test_creator_becomes_owner_member() -> None:
    store = _store()
    alice = _user(store, "alice")

    project = ProjectService(store, alice).create(ProjectIn(name=" House ", currency="xof"))

    assert project["name"] == "House"
    assert project["currency"] == "CFA"
    membership = store.project_users.get((project["id"], alice))
    assert membership["role"] == ProjectRole.owner.value
    listed = ProjectService(store, alice).list_for_user()
    assert [(p["name"], p["role"]) for p in listed] == [("House", "owner")]


def test_duplicate_project_name_is_rejected() -> None:
    store = _store()
    alice = _user(store, "alice")
    bob = _user(store, "bob")
    ProjectService(store, alice).create(ProjectIn(name="House"))

    with pytest.raises(ValueError, match="already exists"):
        ProjectService(store, alice).create(ProjectIn(name="house"))

    ProjectService(store, bob).create(ProjectIn(name="House"))


def test_members_and_roles() -> None:
    store = _store()
    alice = _user(store, "alice")
    bob = _user(store, "bob")
    carol = _user(store, "carol")
    projects = ProjectService(store, alice)
    project = projects.create(ProjectIn(name="House"))["id"]

    projects.add_member(project, MemberIn(user_id=bob))
    projects.add_member(project, MemberIn(user_id=carol, role=ProjectRole.viewer))

    members = projects.members(project)
    assert sorted((m["user_name"], m["role"]) for m in members) == [
        ("alice", "owner"),
        ("bob", "member"),
        ("carol", "viewer"),
    ]
    with pytest.raises(ValueError, match="already a member"):
        projects.add_member(project, MemberIn(user_id=bob))
    with pytest.raises(ValueError, match="exactly one owner"):
        projects.add_member(project, MemberIn(user_id=carol, role=ProjectRole.owner))
    with pytest.raises(ValueError, match="cannot be removed"):
        projects.remove_member(project, alice)
    with pytest.raises(PermissionError):
        ProjectService(store, bob).remove_member(project, carol)

    projects.remove_member(project, bob)

    assert store.project_users.get((project, bob)) is None
    assert isinstance(ProjectService(store, bob).get(project), Unauthorized)


def test_only_owner_updates_and_deletes() -> None:
    store = _store()
    alice = _user(store, "alice")
    bob = _user(store, "bob")
    project = ProjectService(store, alice).create(ProjectIn(name="House"))["id"]
    ProjectService(store, alice).add_member(project, MemberIn(user_id=bob))

    with pytest.raises(PermissionError):
        ProjectService(store, bob).update(project, ProjectIn(name="Mine"))
    with pytest.raises(PermissionError):
        ProjectService(store, bob).delete(project)
    with pytest.raises(PermissionError):
        ProjectService(store, bob).update_rates(project, RatesIn(eur_to_usd=Decimal("1.2")))

    updated = ProjectService(store, alice).update(project, ProjectIn(name="Home", icon="🏠"))

    assert updated["name"] == "Home"
    assert updated["icon"] == "🏠"


def test_delete_project_cascades() -> None:
    store = _store()
    alice = _user(store, "alice")
    project = ProjectService(store, alice).create(ProjectIn(name="House"))["id"]
    ProjectService(store, alice).update_rates(project, RatesIn(eur_to_cfa=Decimal("650")))
    parent = CategoryService(store, alice).create(project, CategoryIn(name="Materials"))["id"]
    child = CategoryService(store, alice).create(
        project, CategoryIn(name="Tiles", parent_id=parent)
    )["id"]
    txn = TransactionService(store, alice).create(
        TransactionIn(
            project_id=project,
            category_id=child,
            type=TransactionType.expense,
            amount=Decimal("10"),
            title="Tiles",
        )
    )
    NoteService(store, alice).add(txn["id"], NoteIn(content_type="text", content="Receipt"))

    ProjectService(store, alice).delete(project)

    assert store.projects.get(project) is None
    assert store.categories.to_array() == []
    assert store.transactions.to_array() == []
    assert store.notes.to_array() == []
    assert store.project_users.to_array() == []
    assert store.settings.to_array() == []


def test_category_levels_and_depth_limit() -> None:
    store = _store()
    alice = _user(store, "alice")
    project = ProjectService(store, alice).create(ProjectIn(name="House"))["id"]
    categories = CategoryService(store, alice)

    first = categories.create(project, CategoryIn(name="A"))
    second = categories.create(project, CategoryIn(name="B", parent_id=first["id"]))
    third = categories.create(project, CategoryIn(name="C", parent_id=second["id"]))

    assert (first["level"], second["level"], third["level"]) == (1, 2, 3)
    with pytest.raises(ValueError, match="3 levels"):
        categories.create(project, CategoryIn(name="D", parent_id=third["id"]))
    with pytest.raises(ValueError, match="already exists"):
        categories.create(project, CategoryIn(name="b", parent_id=first["id"]))

    categories.create(project, CategoryIn(name="B"))

    assert [c["name"] for c in categories.leaves(project)] == ["B", "C"]
    assert [c["name"] for c in categories.list(project)] == ["A", "B", "B", "C"]


def test_parent_must_belong_to_same_project() -> None:
    store = _store()
    alice = _user(store, "alice")
    house = ProjectService(store, alice).create(ProjectIn(name="House"))["id"]
    trip = ProjectService(store, alice).create(ProjectIn(name="Trip"))["id"]
    foreign = CategoryService(store, alice).create(trip, CategoryIn(name="Fuel"))["id"]

    with pytest.raises(ValueError, match="Parent category not found"):
        CategoryService(store, alice).create(house, CategoryIn(name="X", parent_id=foreign))
    with pytest.raises(ValueError, match="Category not found"):
        TransactionService(store, alice).create(
            TransactionIn(
                project_id=house,
                category_id=foreign,
                type=TransactionType.expense,
                amount=Decimal("5"),
                title="Fuel",
            )
        )


def test_viewer_cannot_add_transactions() -> None:
    store = _store()
    alice = _user(store, "alice")
    vic = _user(store, "vic")
    project = ProjectService(store, alice).create(ProjectIn(name="House"))["id"]
    ProjectService(store, alice).add_member(project, MemberIn(user_id=vic, role=ProjectRole.viewer))

    with pytest.raises(PermissionError):
        TransactionService(store, vic).create(
            TransactionIn(
                project_id=project,
                type=TransactionType.budget,
                amount=Decimal("5"),
                title="Top up",
            )
        )

    assert TransactionService(store, vic).list_for_project(project) == []


def test_transaction_amount_is_stored_in_euro_cents() -> None:
    store = _store()
    alice = _user(store, "alice")
    project = ProjectService(store, alice).create(ProjectIn(name="Dakar", currency="CFA"))["id"]

    txn = TransactionService(store, alice).create(
        TransactionIn(
            project_id=project,
            type=TransactionType.expense,
            amount=Decimal("655.957"),
            title="Taxi",
        )
    )
    in_usd = TransactionService(store, alice).create(
        TransactionIn(
            project_id=project,
            type=TransactionType.expense,
            amount=Decimal("2"),
            currency="USD",
            title="Water",
        )
    )

    assert txn["amount_cents"] == 100
    assert in_usd["amount_cents"] == 200


def test_transaction_listing_is_enriched() -> None:
    store = _store()
    alice = _user(store, "alice")
    project = ProjectService(store, alice).create(ProjectIn(name="House"))["id"]
    parent = CategoryService(store, alice).create(project, CategoryIn(name="Materials"))["id"]
    child = CategoryService(store, alice).create(
        project, CategoryIn(name="Tiles", parent_id=parent)
    )["id"]
    txn = TransactionService(store, alice).create(
        TransactionIn(
            project_id=project,
            category_id=child,
            type=TransactionType.expense,
            amount=Decimal("19.99"),
            title="Grout",
        )
    )
    notes = NoteService(store, alice)
    notes.add(txn["id"], NoteIn(content_type=NoteContentType.text, content="Paid cash"))
    notes.add(
        txn["id"],
        NoteIn(content_type=NoteContentType.image, content="photo", file_path="receipts/1.jpg"),
    )

    [view] = TransactionService(store, alice).list_for_project(project)

    assert view.amount == Decimal("19.99")
    assert view.project_name == "House"
    assert view.user_name == "alice"
    assert view.category_name == "Tiles"
    assert view.parent_category_name == "Materials"
    assert view.has_text and view.has_image
    assert not view.has_audio and not view.has_document
    assert len(notes.list_for_transaction(txn["id"])) == 2
    assert [v.title for v in TransactionService(store, alice).recent()] == ["Grout"]


def test_delete_transaction_removes_notes() -> None:
    store = _store()
    alice = _user(store, "alice")
    bob = _user(store, "bob")
    project = ProjectService(store, alice).create(ProjectIn(name="House"))["id"]
    ProjectService(store, alice).add_member(project, MemberIn(user_id=bob))
    txn = TransactionService(store, alice).create(
        TransactionIn(
            project_id=project,
            type=TransactionType.expense,
            amount=Decimal("3"),
            title="Nails",
        )
    )
    NoteService(store, alice).add(txn["id"], NoteIn(content_type="audio", content="memo"))

    with pytest.raises(PermissionError):
        TransactionService(store, bob).delete(txn["id"])

    TransactionService(store, alice).delete(txn["id"])

    assert store.transactions.to_array() == []
    assert store.notes.to_array() == []
    with pytest.raises(ValueError, match="not found"):
        TransactionService(store, alice).get(txn["id"])
