"""
Tenant Context Guard: one unit of work bound to one tenant

WHY: Every ledger, order and webhook operation runs inside exactly one
storage transaction that belongs to exactly one tenant. Isolation must not
depend on each query remembering its tenant filter.

SECURITY INVARIANTS:
1. run_in_tenant() opens one transaction, binds it to the tenant, commits on
   success and rolls back on any exception (no partial effect)
2. While bound, every ORM SELECT/UPDATE/DELETE gets tenant_id == current on
   every TenantScoped entity (with_loader_criteria), so a missing filter
   cannot leak rows
   (relationship and column loads are exempt: they start from a parent row
   that already passed the criteria)
3. Rows flushed while bound are stamped with the current tenant; rows of
   another tenant are rejected with TenantAccessError
4. On PostgreSQL the tenant is also set as the transaction-local
   app.current_tenant setting so row level security policies apply

USAGE:
    from vault.services.tenant_service import run_in_tenant

    def _op():
        return db.session.query(Order).filter_by(id=order_id).first()

    order = run_in_tenant(org_id, _op)
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import event, text
from sqlalchemy.orm import Session, with_loader_criteria

from ..errors import StorageUnavailable, TenantAccessError
from ..extensions import db
from ..models import TenantScoped
from .concurrency import TRANSIENT_ERRORS, run_with_retry


TENANT_INFO_KEY = "vault.tenant_id"


def current_tenant_id() -> int | None:
    """Tenant bound to the active unit of work, or None outside one."""
    return db.session().info.get(TENANT_INFO_KEY)


def require_tenant_id() -> int:
    tenant_id = current_tenant_id()
    if tenant_id is None:
        raise TenantAccessError("Tenant context not established")
    return tenant_id


def run_in_tenant(tenant_id: int, fn, *args, **kwargs):
    """
    Execute fn(*args, **kwargs) inside one storage transaction bound to tenant_id.

    Nested calls for the same tenant join the open transaction (commit happens
    once, at the outermost call). A nested call for a different tenant raises
    TenantAccessError.

    Lock conflicts are retried; if the transaction still cannot be opened or
    committed StorageUnavailable is raised and nothing is persisted.
    """
    if not tenant_id:
        raise TenantAccessError("Tenant context not established")

    session = db.session()
    active = session.info.get(TENANT_INFO_KEY)
    if active is not None:
        if active != tenant_id:
            current_app.logger.warning(
                "Cross-tenant unit of work refused: active tenant %s, requested %s", active, tenant_id
            )
            raise TenantAccessError("Tenant not found")
        return fn(*args, **kwargs)

    def _unit():
        session.info[TENANT_INFO_KEY] = tenant_id
        try:
            _bind_database_tenant(session, tenant_id)
            result = fn(*args, **kwargs)
            session.commit()
            return result
        except BaseException:
            session.rollback()
            raise
        finally:
            session.info.pop(TENANT_INFO_KEY, None)

    try:
        return run_with_retry(_unit)
    except TRANSIENT_ERRORS as exc:
        current_app.logger.error("Unit of work for tenant %s failed: %s", tenant_id, exc)
        raise StorageUnavailable() from exc


def _bind_database_tenant(session: Session, tenant_id: int) -> None:
    dialect = db.engine.dialect.name
    if dialect == "postgresql":
        # is_local=true: the setting ends with the transaction
        session.execute(
            text("SELECT set_config('app.current_tenant', :tenant_id, true)"),
            {"tenant_id": str(tenant_id)},
        )
    elif dialect == "sqlite":
        # SQLite has no row locks; take the write lock up front so concurrent
        # read-modify-write units serialize instead of failing at commit.
        dbapi_connection = session.connection().connection.dbapi_connection
        if not dbapi_connection.in_transaction:
            session.execute(text("BEGIN IMMEDIATE"))


@event.listens_for(Session, "do_orm_execute")
def _apply_tenant_criteria(execute_state):
    tenant_id = execute_state.session.info.get(TENANT_INFO_KEY)
    if tenant_id is None:
        return
    # Lazy loads (order.lines, delivery.endpoint) follow FKs from a parent row
    # that was already loaded under the tenant criteria
    if execute_state.is_column_load or execute_state.is_relationship_load:
        return
    if not (execute_state.is_select or execute_state.is_update or execute_state.is_delete):
        return

    execute_state.statement = execute_state.statement.options(
        with_loader_criteria(
            TenantScoped,
            lambda cls: cls.tenant_id == tenant_id,
            include_aliases=True,
        )
    )


@event.listens_for(Session, "before_flush")
def _stamp_and_check_tenant(session, flush_context, instances):
    tenant_id = session.info.get(TENANT_INFO_KEY)
    if tenant_id is None:
        return

    for obj in session.new:
        if not isinstance(obj, TenantScoped):
            continue
        if obj.tenant_id is None:
            obj.tenant_id = tenant_id
        elif obj.tenant_id != tenant_id:
            raise TenantAccessError("Cannot write rows for another tenant")

    for obj in list(session.dirty) + list(session.deleted):
        if isinstance(obj, TenantScoped) and obj.tenant_id != tenant_id:
            raise TenantAccessError("Cannot modify rows of another tenant")
