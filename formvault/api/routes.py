from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from formvault.api.schemas import (
    BootstrapResponse,
    Envelope,
    IdentityAssertionRequest,
    PreferencesUpdateRequest,
    RegisteredUserList,
    RegisteredUserResponse,
)
from formvault.logging import get_logger
from formvault.service.identity import UserIdentity, parse_email
from formvault.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@router.get("/preferences", response_model=Envelope)
def get_preferences():
    runtime = get_runtime()
    summary = runtime.preferences.preference_summary()
    return Envelope(status="ok", data=summary.model_dump())


@router.patch("/preferences", response_model=Envelope)
def update_preferences(body: PreferencesUpdateRequest):
    runtime = get_runtime()
    prefs = runtime.preferences
    updates = body.model_dump(exclude_unset=True)
    setters = {
        "google_simple_api_key": prefs.set_google_simple_api_key,
        "enketo_api_url": prefs.set_enketo_api_url,
        "enketo_api_token": prefs.set_enketo_api_token,
        "skip_malformed_submissions": prefs.set_skip_malformed_submissions,
        "faster_watchdog_cycle_enabled": prefs.set_faster_watchdog_cycle_enabled,
        "faster_background_actions_disabled": prefs.set_faster_background_actions_disabled,
    }
    for name, value in updates.items():
        if value is None and name not in (
            "google_simple_api_key",
            "enketo_api_url",
            "enketo_api_token",
        ):
            raise _http_error(
                "validation_error", f"{name} cannot be null", 400, {"field": name}
            )
        setters[name](value)
    logger.info("preferences_updated", fields=sorted(updates))
    return Envelope(status="ok", data=prefs.preference_summary().model_dump())


@router.get("/users", response_model=Envelope)
def lookup_user(
    username: Optional[str] = Query(default=None, max_length=80),
    email: Optional[str] = Query(default=None),
):
    if (username is None) == (email is None):
        raise _http_error(
            "validation_error", "exactly one of username or email is required", 400
        )
    runtime = get_runtime()
    if username is not None:
        user = runtime.users.find_by_username(username)
    else:
        user = runtime.users.find_by_email(parse_email(email).email)
    if user is None:
        raise _http_error("not_found", "user not found", 404)
    return Envelope(status="ok", data=RegisteredUserResponse.from_row(user).model_dump(mode="json"))


@router.get("/users/active", response_model=Envelope)
def list_active_users():
    runtime = get_runtime()
    items = [RegisteredUserResponse.from_row(user) for user in runtime.users.list_active()]
    return Envelope(status="ok", data=RegisteredUserList(items=items).model_dump(mode="json"))


@router.post("/identity/assertions", response_model=Envelope)
def assert_identity(body: IdentityAssertionRequest):
    runtime = get_runtime()
    user = runtime.users.upsert_from_identity_assertion(
        UserIdentity(username=body.username, email=body.email, full_name=body.full_name)
    )
    return Envelope(status="ok", data=RegisteredUserResponse.from_row(user).model_dump(mode="json"))


@router.post("/admin/bootstrap", response_model=Envelope)
def run_bootstrap():
    runtime = get_runtime()
    super_users = runtime.bootstrap.assert_super_users()
    response = BootstrapResponse(
        super_users=[RegisteredUserResponse.from_row(user) for user in super_users],
        last_super_user_revision=runtime.revisions.get_last_super_user_id_revision_date(),
    )
    return Envelope(status="ok", data=response.model_dump(mode="json"))
