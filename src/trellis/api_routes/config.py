"""Type catalog, relationship and transition configuration route handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING

from starlette.requests import Request

if TYPE_CHECKING:
    from fastapi import APIRouter

from trellis.api_routes.common import _engine_error, _error_response, _parse_json_body, _require_str
from trellis.core import TrellisDB
from trellis.errors import TrellisError


def create_router() -> APIRouter:
    """Build the APIRouter for configuration endpoints."""
    from fastapi import APIRouter, Depends
    from fastapi.responses import JSONResponse

    from trellis.api import _get_db

    router = APIRouter()

    # -- Types ---------------------------------------------------------------

    @router.get("/types")
    async def api_list_types(organization_id: str | None = None, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        types = sorted(db.list_types(organization_id=organization_id), key=lambda t: t.name)
        return JSONResponse([t.to_dict() for t in types])

    @router.post("/types", status_code=201)
    async def api_create_type(request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        name = _require_str(body, "name")
        if isinstance(name, JSONResponse):
            return name
        try:
            wit = db.create_type(
                name, organization_id=body.get("organization_id"), description=body.get("description") or ""
            )
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(wit.to_dict(), status_code=201)

    @router.get("/types/{type_ref}")
    async def api_get_type(type_ref: str, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        try:
            wit = db.get_type(type_ref)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        rels = db.list_relationships(wit.id)
        return JSONResponse({**wit.to_dict(), "relationships": [r.to_dict() for r in rels]})

    @router.post("/types/{type_ref}/fields", status_code=201)
    async def api_add_field(type_ref: str, request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        name = _require_str(body, "name")
        if isinstance(name, JSONResponse):
            return name
        try:
            defn = db.add_field(
                db.get_type(type_ref).id,
                name,
                body.get("field_type", "text"),
                label=body.get("label"),
                options=body.get("options"),
                default=body.get("default"),
                required_on_creation=bool(body.get("is_required_on_creation", False)),
                display_order=body.get("display_order"),
            )
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(defn.to_dict(), status_code=201)

    @router.post("/types/{type_ref}/statuses", status_code=201)
    async def api_add_status(type_ref: str, request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        name = _require_str(body, "name")
        if isinstance(name, JSONResponse):
            return name
        try:
            status = db.add_status(
                db.get_type(type_ref).id,
                name,
                body.get("category", "backlog"),
                is_initial=bool(body.get("is_initial", False)),
                is_final=bool(body.get("is_final", False)),
                display_order=body.get("display_order"),
            )
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(status.to_dict(), status_code=201)

    # -- Relationships -------------------------------------------------------

    @router.get("/relationships")
    async def api_list_relationships(parent_type: str | None = None, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        try:
            parent_id = db.get_type(parent_type).id if parent_type else None
            rels = db.list_relationships(parent_id)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse([r.to_dict() for r in rels])

    @router.post("/relationships", status_code=201)
    async def api_define_relationship(request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        """Define an allowed parent/child type pair. Types may be given by name or id."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        parent = _require_str(body, "parent_type")
        if isinstance(parent, JSONResponse):
            return parent
        child = _require_str(body, "child_type")
        if isinstance(child, JSONResponse):
            return child
        config = body.get("auto_create_config")
        if config is not None and not isinstance(config, dict):
            return _error_response("'auto_create_config' must be an object", "VALIDATION_ERROR", 400)
        try:
            rel = db.define_relationship(
                db.get_type(parent).id,
                db.get_type(child).id,
                body.get("relationship_name"),
                is_required=bool(body.get("is_required", False)),
                min_count=body.get("min_count"),
                max_count=body.get("max_count"),
                auto_create=bool(body.get("auto_create", False)),
                auto_create_config=config,
                display_order=body.get("display_order"),
            )
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(rel.to_dict(), status_code=201)

    @router.delete("/relationships/{relationship_id}")
    async def api_delete_relationship(relationship_id: str, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        try:
            db.delete_relationship(relationship_id)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse({"deleted": True, "id": relationship_id})

    # -- Transitions ---------------------------------------------------------

    @router.get("/transitions")
    async def api_list_transitions(type: str | None = None, db: TrellisDB = Depends(_get_db)) -> JSONResponse:  # noqa: A002
        try:
            type_id = db.get_type(type).id if type else None
            transitions = db.list_transitions(type_id)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse([t.to_dict() for t in transitions])

    @router.post("/transitions", status_code=201)
    async def api_define_transition(request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        """Configure a status transition. Type and statuses may be given by name or id."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        refs: dict[str, str] = {}
        for key in ("type", "from_status", "to_status"):
            value = _require_str(body, key)
            if isinstance(value, JSONResponse):
                return value
            refs[key] = value
        for key in ("validation_config", "action_config"):
            if body.get(key) is not None and not isinstance(body[key], dict):
                return _error_response(f"'{key}' must be an object", "VALIDATION_ERROR", 400)
        try:
            wit = db.get_type(refs["type"])
            snapshot = db.get_config_snapshot()
            transition = db.define_transition(
                wit.id,
                snapshot.get_status(wit.id, refs["from_status"]).id,
                snapshot.get_status(wit.id, refs["to_status"]).id,
                is_allowed=bool(body.get("is_allowed", True)),
                validation_config=body.get("validation_config"),
                action_config=body.get("action_config"),
            )
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(transition.to_dict(), status_code=201)

    @router.delete("/transitions/{transition_id}")
    async def api_delete_transition(transition_id: str, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        try:
            db.delete_transition(transition_id)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse({"deleted": True, "id": transition_id})

    # -- Bulk load -----------------------------------------------------------

    @router.post("/config/load")
    async def api_load_config(request: Request, db: TrellisDB = Depends(_get_db)) -> JSONResponse:
        """Load a whole configuration document atomically."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        try:
            counts = db.load_configuration(body)
        except (TrellisError, ValueError) as e:
            return _engine_error(e)
        return JSONResponse(counts)

    return router
