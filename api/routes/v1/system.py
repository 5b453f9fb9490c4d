"""
api/routes/v1/system.py -- Administrator settings and migration status.

Routes:
  GET   /api/v1/system/auth        -- current auth configuration (admin only)
  PATCH /api/v1/system/auth        -- change it; applies to the next request (admin only)
  GET   /api/v1/system/migrations  -- schema version, pending steps, backups (admin only)

Saved settings take effect on the very next request in every process that
shares the store: the resolver reads them through on each call, nothing here
notifies anyone.

A PATCH that would leave no way to log in (password login off and proxy auth
off) is refused with 400 instead of locking every administrator out.
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import (
    AuthConfigPatch,
    AuthConfigResponse,
    MigrationStatusResponse,
    MigrationStepInfo,
    ProxyConfigModel,
    SessionConfigModel,
)
from auth.config_store import SystemConfigStore
from auth.dependencies import require_admin
from auth.models import AuthConfig, User
from auth.whitelist import WhitelistMatcher, split_entries
from database.backup import list_backups
from database.runner import MigrationRunner

logger = logging.getLogger("homeboard.api.system")

# Auth policy:
# - every route in this module requires admin (router-level dependency)
router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/system/auth", response_model=AuthConfigResponse)
def get_auth_settings(request: Request) -> AuthConfigResponse:
    config_store: SystemConfigStore = request.app.state.config_store
    return _to_response(config_store.get_auth_config(), request.app.state.whitelist)


@router.patch("/system/auth", response_model=AuthConfigResponse)
def update_auth_settings(
    request: Request,
    body: AuthConfigPatch,
    current_user: User = Depends(require_admin),
) -> AuthConfigResponse:
    """Apply the sections present in the body, in a fixed order.

    Values are validated by the store; a ValueError there becomes 422.
    """
    config_store: SystemConfigStore = request.app.state.config_store
    proxy_changes = body.proxy.model_dump(exclude_none=True) if body.proxy else {}
    session_changes = body.session.model_dump(exclude_none=True) if body.session else {}

    if not (proxy_changes or session_changes) and body.local_enabled is None and body.default_group is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    current = config_store.get_auth_config()
    local_after = current.local_enabled if body.local_enabled is None else body.local_enabled
    proxy_after = proxy_changes.get("enabled", current.proxy.enabled)
    if not local_after and not proxy_after:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "no_login_method",
                "message": "Password login cannot be disabled while proxy authentication is off.",
            },
        )

    try:
        if proxy_changes:
            config_store.update_proxy(**proxy_changes)
        if session_changes:
            config_store.update_session(**session_changes)
        if body.local_enabled is not None:
            config_store.set_local_enabled(body.local_enabled)
        if body.default_group is not None:
            config_store.set_default_group(body.default_group.value)
    except ValueError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "invalid_config", "message": str(exc)},
        ) from exc

    logger.info("Auth settings changed by %r", current_user.username)
    return _to_response(config_store.get_auth_config(), request.app.state.whitelist)


@router.get("/system/migrations", response_model=MigrationStatusResponse)
def migration_status(request: Request) -> MigrationStatusResponse:
    runner: MigrationRunner = request.app.state.migration_runner
    status = runner.check_migration_status()
    backups = list_backups(runner.backup_dir) if runner.backup_dir else []
    return MigrationStatusResponse(
        state=status.state.value,
        current_version=status.current_version,
        expected_version=status.expected_version,
        pending=[MigrationStepInfo(version=s.version, name=s.name) for s in runner.pending_steps(status)],
        backups=[b.filename for b in backups],
    )


def _to_response(config: AuthConfig, matcher: WhitelistMatcher) -> AuthConfigResponse:
    proxy = asdict(config.proxy)
    proxy["whitelist"] = ", ".join(split_entries(config.proxy.whitelist))
    warnings = [f"Invalid whitelist entry ignored: {entry}" for entry in matcher.invalid_entries(config.proxy.whitelist)]
    return AuthConfigResponse(
        local_enabled=config.local_enabled,
        default_group=config.default_group,
        proxy=ProxyConfigModel(**proxy),
        session=SessionConfigModel(**asdict(config.session)),
        warnings=warnings,
    )
