"""Work item, hierarchy, status and watcher route handlers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from starlette.requests import Request

if TYPE_CHECKING:
    from fastapi import APIRouter

from trellis.api_routes.common import (
    _engine_error,
    _error_response,
    _parse_bool_value,
    _parse_json_body,
    _parse_pagination,
    _require_str,
    _validate_actor,
)
from trellis.core import TrellisDB
from trellis.errors import TrellisError
from trellis.models import VALID_NOTIFY_CATEGORIES

logger = logging.getLogger(__name__)

_CREATE_KEYS = frozenset(
    {
        "type",
        "organization_id",
        "subject",
        "parent_id",
        "description",
        "priority",
        "assigned_to",
        "due_date",
        "custom_fields",
        "actor",
    }
)
_UPDATE_KEYS = frozenset({"subject", "description", "priority", "assigned_to", "due_date", "custom_fields", "actor"})


def _unknown_keys(body: dict[str, Any], allowed: frozenset[str]) -> list[str]:
    return sorted(set(body) - allowed)


def create_router() -> APIRouter:
    """Build the APIRouter for work item endpoints.

    NOTE: All handlers are async despite doing synchronous SQLite I/O.
    This serializes DB access on the event loop thread, avoiding concurrent
    multi-thread access to the shared DB connection.
    """
    from fastapi import APIRouter, Depends
    from fastapi.responses import JSONResponse

    from trellis.api import _get_db

    router = APIRouter()

    # -- Items ---------------------------------------------------------------

    @router.get("/items")
    async def api_list_items(request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        params = request.query_params
        page = _parse_pagination(params)
        if isinstance(page, JSONResponse):
            return page
        limit, offset = page
        roots_only = _parse_bool_value(params.get("roots", "false"), "roots")
        if isinstance(roots_only, JSONResponse):
            return roots_only
        try:
            type_id = db.get_type(params["type"]).id if params.get("type") else None
            status_id = params.get("status")
            if status_id and type_id:
                status_id = db.get_config_snapshot().get_status(type_id, status_id).id
            items = db.list_work_items(
                organization_id=params.get("organization_id"),
                type_id=type_id,
                parent_id=params.get("parent_id"),
                status_id=status_id,
                assigned_to=params.get("assigned_to"),
                roots_only=roots_only,
                limit=limit,
                offset=offset,
            )
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse({"items": [i.to_dict() for i in items], "limit": limit, "offset": offset})

    @router.post("/items", status_code=201)
    async def api_create_item(request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        """Create a work item; configured children are auto-created with it."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        unknown = _unknown_keys(body, _CREATE_KEYS)
        if unknown:
            return _error_response(f"Unknown field(s): {', '.join(unknown)}", "VALIDATION_ERROR", 400)
        actor, actor_err = _validate_actor(body.get("actor", "api"))
        if actor_err:
            return actor_err
        type_ref = _require_str(body, "type")
        if isinstance(type_ref, JSONResponse):
            return type_ref
        subject = _require_str(body, "subject")
        if isinstance(subject, JSONResponse):
            return subject
        parent_id = body.get("parent_id")
        organization_id = body.get("organization_id") or ""
        if not parent_id and not organization_id:
            return _error_response("'organization_id' is required for root items", "VALIDATION_ERROR", 400)
        custom_fields = body.get("custom_fields")
        if custom_fields is not None and not isinstance(custom_fields, dict):
            return _error_response("'custom_fields' must be an object", "VALIDATION_ERROR", 400)
        try:
            result = db.create_work_item(
                db.get_type(type_ref).id,
                organization_id,
                subject,
                parent_id=parent_id,
                description=body.get("description") or "",
                priority=body.get("priority") or "medium",
                assigned_to=body.get("assigned_to"),
                due_date=body.get("due_date"),
                custom_fields=custom_fields,
                actor=actor,
            )
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(result.to_dict(), status_code=201)

    @router.get("/items/{item_id}")
    async def api_get_item(item_id: str, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        """Item detail plus any unmet required-child relationships."""
        try:
            item = db.get_work_item(item_id)
            missing = db.missing_required_children(item_id)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse({**item.to_dict(), "missing_children": missing})

    @router.patch("/items/{item_id}")
    async def api_update_item(item_id: str, request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        unknown = _unknown_keys(body, _UPDATE_KEYS)
        if unknown:
            hint = " (use POST /items/{id}/status to change status)" if "status" in unknown else ""
            return _error_response(f"Unknown field(s): {', '.join(unknown)}{hint}", "VALIDATION_ERROR", 400)
        actor, actor_err = _validate_actor(body.pop("actor", "api"))
        if actor_err:
            return actor_err
        try:
            item = db.update_work_item(item_id, actor=actor, **body)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(item.to_dict())

    @router.delete("/items/{item_id}")
    async def api_delete_item(item_id: str, actor: str = "api", db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        cleaned, actor_err = _validate_actor(actor)
        if actor_err:
            return actor_err
        try:
            item = db.delete_work_item(item_id, actor=cleaned)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(item.to_dict())

    # -- Hierarchy -----------------------------------------------------------

    @router.post("/items/{item_id}/move")
    async def api_move_item(item_id: str, request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        """Re-parent an item; ``{"parent_id": null}`` makes it a root."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        if "parent_id" not in body:
            return _error_response("'parent_id' is required (null moves to the root)", "VALIDATION_ERROR", 400)
        actor, actor_err = _validate_actor(body.get("actor", "api"))
        if actor_err:
            return actor_err
        try:
            item = db.move_work_item(item_id, body["parent_id"], actor=actor)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(item.to_dict())

    @router.get("/items/{item_id}/children")
    async def api_children(item_id: str, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        try:
            items = db.get_children(item_id)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse([i.to_dict() for i in items])

    @router.get("/items/{item_id}/descendants")
    async def api_descendants(item_id: str, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        try:
            items = db.get_descendants(item_id)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse([i.to_dict() for i in items])

    @router.get("/items/{item_id}/ancestors")
    async def api_ancestors(item_id: str, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        """Ancestors ordered root first."""
        try:
            items = db.get_ancestors(item_id)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse([i.to_dict() for i in items])

    # -- Status --------------------------------------------------------------

    @router.post("/items/{item_id}/status")
    async def api_update_status(item_id: str, request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        """Change status; validation failures come back as 422 with every unmet condition."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        status = _require_str(body, "status")
        if isinstance(status, JSONResponse):
            return status
        actor, actor_err = _validate_actor(body.get("actor", "api"))
        if actor_err:
            return actor_err
        try:
            result = db.update_status(item_id, status, actor=actor)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(result.to_dict())

    @router.get("/items/{item_id}/events")
    async def api_item_events(
        item_id: str, limit: int = 50, event_type: str | None = None, db: TrellisDB = Depends(_get_db)
    ) -> JSONResponse:
        limit = min(max(limit, 1), 1000)
        try:
            db.get_work_item(item_id, include_deleted=True)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(db.get_item_events(item_id, limit=limit, event_type=event_type))

    # -- Watchers ------------------------------------------------------------

    @router.get("/items/{item_id}/watchers")
    async def api_list_watchers(item_id: str, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        try:
            watchers = db.list_watchers(item_id)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse([w.to_dict() for w in watchers])

    @router.post("/items/{item_id}/watchers", status_code=201)
    async def api_add_watcher(item_id: str, request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        user_id = _require_str(body, "user_id")
        if isinstance(user_id, JSONResponse):
            return user_id
        actor, actor_err = _validate_actor(body.get("actor", "api"))
        if actor_err:
            return actor_err
        preferences = body.get("preferences") or {}
        if not isinstance(preferences, dict) or any(
            k.removeprefix("notify_") not in VALID_NOTIFY_CATEGORIES or not isinstance(v, bool)
            for k, v in preferences.items()
        ):
            return _error_response(
                f"'preferences' must map {', '.join(sorted(VALID_NOTIFY_CATEGORIES))} to booleans",
                "VALIDATION_ERROR",
                400,
            )
        try:
            watcher = db.add_watcher(item_id, user_id, actor=actor, **preferences)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(watcher.to_dict(), status_code=201)

    @router.delete("/items/{item_id}/watchers/{user_id}")
    async def api_remove_watcher(
        item_id: str, user_id: str, actor: str = "api", db: TrellisDB = Depends(_get_db)
    ) -> JSONResponse:
        cleaned, actor_err = _validate_actor(actor)
        if actor_err:
            return actor_err
        try:
            removed = db.remove_watcher(item_id, user_id, actor=cleaned)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        if not removed:
            return _error_response(f"{user_id} is not watching {item_id}", "NOT_FOUND", 404)
        return JSONResponse({"removed": True, "item_id": item_id, "user_id": user_id})

    @router.get("/users/{user_id}/watching")
    async def api_watched_items(user_id: str, request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        """Live items the user watches."""
        page = _parse_pagination(request.query_params)
        if isinstance(page, JSONResponse):
            return page
        limit, offset = page
        try:
            items = db.list_watched_items(user_id, limit=limit, offset=offset)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse({"items": [i.to_dict() for i in items], "limit": limit, "offset": offset})

    return router
