import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from aggregation import TREND_MONTHS, CorruptDataError
from config import get_settings
from fx_rates import ExchangeRateService, normalize_currency_code
from models import CurrencyCode
from row_store import RowStore, StoreUnavailable, build_row_store
from schemas import (
    CategoryIn,
    CurrentUser,
    MemberIn,
    NoteIn,
    PinChangeIn,
    PreferencesIn,
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
    StatisticsService,
    TransactionService,
    UserService,
    limit_to_recent_months,
)
from session import issue_session_token, read_session_token


def _configure_logging() -> None:
    logging.basicConfig(level=get_settings().log_level)


def get_store(request: Request) -> RowStore:
    return request.app.state.store


def current_user(
    store: RowStore = Depends(get_store),
    authorization: Optional[str] = Header(default=None),
) -> CurrentUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = read_session_token(authorization[7:].strip())
    if user is None or store.users.get(user.id) is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return user


def currency_param(currency: Optional[str] = None) -> Optional[CurrencyCode]:
    if currency is None:
        return None
    code = normalize_currency_code(currency)
    if code is None:
        raise HTTPException(status_code=400, detail=f"Unsupported currency: {currency}")
    return code


def _not_found(exc: ValueError) -> bool:
    return str(exc).endswith("not found")


def _client_error(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=404 if _not_found(exc) else 400, detail=str(exc))


def _authorized(result):
    if isinstance(result, Unauthorized):
        raise HTTPException(status_code=403, detail=result.reason)
    return result


def create_app(store: Optional[RowStore] = None) -> FastAPI:
    """Build the HTTP app around ``store`` (the configured backend by default)."""
    _configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.store.initialize()
        UserService(app.state.store).ensure_admin()
        yield
        app.state.store.close()

    app = FastAPI(title="ExpenShare", lifespan=lifespan)
    app.state.store = store or build_row_store(get_settings())

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError):
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logging.error(f"store_unavailable: path={request.url.path} error={exc}")
        return JSONResponse(status_code=503, content={"detail": "Storage is unavailable"})

    @app.exception_handler(CorruptDataError)
    async def corrupt_data_handler(request: Request, exc: CorruptDataError):
        logging.error(f"corrupt_data: path={request.url.path} error={exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.get("/health")
    def health():
        return {"status": "ok", "backend": app.state.store.backend}

    @app.post("/api/users", status_code=201)
    def signup(payload: UserIn, store: RowStore = Depends(get_store)):
        try:
            return UserService(store).create(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/api/session")
    def login(payload: UserIn, store: RowStore = Depends(get_store)):
        try:
            user = UserService(store).authenticate(payload.name, payload.pin)
        except ValueError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        logging.info(f"login: user_id={user['id']}")
        return {"token": issue_session_token(user), "user": user}

    @app.get("/api/session")
    def whoami(user: CurrentUser = Depends(current_user)):
        return user

    @app.get("/api/users")
    def list_users(
        store: RowStore = Depends(get_store), user: CurrentUser = Depends(current_user)
    ):
        try:
            return UserService(store, user.id).list_all()
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.delete("/api/users/{user_id}")
    def delete_user(
        user_id: str,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            return UserService(store, user.id).delete_user(user_id)
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.put("/api/users/me/pin", status_code=204)
    def change_pin(
        payload: PinChangeIn,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            UserService(store, user.id).change_pin(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/api/preferences")
    def get_preferences(
        store: RowStore = Depends(get_store), user: CurrentUser = Depends(current_user)
    ):
        rate_service = ExchangeRateService(store)
        rates = rate_service.rates_for_user(user.id)
        return {
            "currency": rate_service.user_currency(user.id),
            "eur_to_cfa": rates.eur_to_cfa,
            "eur_to_usd": rates.eur_to_usd,
        }

    @app.put("/api/preferences", status_code=204)
    def save_preferences(
        payload: PreferencesIn,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        ExchangeRateService(store).set_user_preferences(user.id, payload)

    @app.get("/api/stats")
    def global_stats(
        currency: Optional[CurrencyCode] = Depends(currency_param),
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        return StatisticsService(store, user.id).global_stats(currency)

    @app.get("/api/stats/trend")
    def monthly_trend(
        months: int = TREND_MONTHS,
        currency: Optional[CurrencyCode] = Depends(currency_param),
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        if months < 1:
            raise HTTPException(status_code=400, detail="months must be positive")
        stats = StatisticsService(store, user.id).global_stats(currency)
        return limit_to_recent_months(stats, months)

    @app.get("/api/transactions/recent")
    def recent_transactions(
        limit: int = 10,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        return TransactionService(store, user.id).recent(max(1, min(limit, 100)))

    @app.get("/api/projects")
    def list_projects(
        store: RowStore = Depends(get_store), user: CurrentUser = Depends(current_user)
    ):
        return ProjectService(store, user.id).list_for_user()

    @app.get("/api/admin/projects")
    def list_all_projects(
        store: RowStore = Depends(get_store), user: CurrentUser = Depends(current_user)
    ):
        try:
            return ProjectService(store, user.id).list_all()
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.post("/api/projects", status_code=201)
    def create_project(
        payload: ProjectIn,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            return ProjectService(store, user.id).create(payload)
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.get("/api/projects/{project_id}")
    def get_project(
        project_id: str,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        return _authorized(ProjectService(store, user.id).get(project_id))

    @app.put("/api/projects/{project_id}")
    def update_project(
        project_id: str,
        payload: ProjectIn,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            return ProjectService(store, user.id).update(project_id, payload)
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.delete("/api/projects/{project_id}", status_code=204)
    def delete_project(
        project_id: str,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            ProjectService(store, user.id).delete(project_id)
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.put("/api/projects/{project_id}/rates", status_code=204)
    def update_project_rates(
        project_id: str,
        payload: RatesIn,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            ProjectService(store, user.id).update_rates(project_id, payload)
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.get("/api/projects/{project_id}/members")
    def list_members(
        project_id: str,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        return _authorized(ProjectService(store, user.id).members(project_id))

    @app.post("/api/projects/{project_id}/members", status_code=201)
    def add_member(
        project_id: str,
        payload: MemberIn,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            return ProjectService(store, user.id).add_member(project_id, payload)
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.delete("/api/projects/{project_id}/members/{member_id}", status_code=204)
    def remove_member(
        project_id: str,
        member_id: str,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            ProjectService(store, user.id).remove_member(project_id, member_id)
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.get("/api/projects/{project_id}/stats")
    def project_stats(
        project_id: str,
        currency: Optional[CurrencyCode] = Depends(currency_param),
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        return _authorized(
            StatisticsService(store, user.id).project_stats(project_id, currency)
        )

    @app.get("/api/projects/{project_id}/hierarchy")
    def project_hierarchy(
        project_id: str,
        currency: Optional[CurrencyCode] = Depends(currency_param),
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        return _authorized(
            StatisticsService(store, user.id).project_category_hierarchy(project_id, currency)
        )

    @app.get("/api/projects/{project_id}/categories")
    def list_categories(
        project_id: str,
        leaves_only: bool = False,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        service = CategoryService(store, user.id)
        if leaves_only:
            return _authorized(service.leaves(project_id))
        return _authorized(service.list(project_id))

    @app.post("/api/projects/{project_id}/categories", status_code=201)
    def create_category(
        project_id: str,
        payload: CategoryIn,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            return CategoryService(store, user.id).create(project_id, payload)
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.get("/api/projects/{project_id}/transactions")
    def list_transactions(
        project_id: str,
        currency: Optional[CurrencyCode] = Depends(currency_param),
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        return _authorized(
            TransactionService(store, user.id).list_for_project(project_id, currency)
        )

    @app.post("/api/transactions", status_code=201)
    def create_transaction(
        payload: TransactionIn,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            return TransactionService(store, user.id).create(payload)
        except ValueError as exc:
            raise _client_error(exc) from exc

    @app.delete("/api/transactions/{transaction_id}", status_code=204)
    def delete_transaction(
        transaction_id: str,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            TransactionService(store, user.id).delete(transaction_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/api/transactions/{transaction_id}/notes")
    def list_notes(
        transaction_id: str,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            return NoteService(store, user.id).list_for_transaction(transaction_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/api/transactions/{transaction_id}/notes", status_code=201)
    def add_note(
        transaction_id: str,
        payload: NoteIn,
        store: RowStore = Depends(get_store),
        user: CurrentUser = Depends(current_user),
    ):
        try:
            return NoteService(store, user.id).add(transaction_id, payload)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    return app


app = create_app()
