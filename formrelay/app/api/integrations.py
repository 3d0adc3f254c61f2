"""
Integration API for FormRelay.

Configuration endpoints used by the form builder UI, plus the inbound
event endpoint the form runtime calls on every lifecycle event.

Endpoints:
    GET    /providers
    GET    /forms/{form_id}/integrations
    POST   /forms/{form_id}/integrations
    DELETE /forms/{form_id}/integrations/{config_id}
    POST   /forms/{form_id}/integrations/{config_id}/test
    POST   /forms/{form_id}/events
"""

from __future__ import annotations

import logging
from typing import Any

import pydantic
from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from formrelay.app.dependencies import get_manager
from formrelay.config.schemas import IntegrationConfig
from formrelay.events import EventPayload
from formrelay.integrations.base import MalformedPayloadError, ValidationError
from formrelay.manager import IntegrationManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])


def _error_details(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Reduce pydantic error dicts to JSON-safe loc/msg/type entries."""
    return [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": str(err.get("msg", "")),
            "type": str(err.get("type", "")),
        }
        for err in errors
    ]


def _get_form_config(manager: IntegrationManager, form_id: str, config_id: str) -> IntegrationConfig:
    config = manager.get_config(config_id)
    if config is None or config.form_id != form_id:
        raise HTTPException(status_code=404, detail=f"Integration {config_id} not found")
    return config


# ==================== Catalog ====================


@router.get("/providers", summary="List available destination providers")
async def list_providers(
    manager: IntegrationManager = Depends(get_manager),
) -> dict[str, Any]:
    """Descriptors for the configuration UI."""
    return {"providers": [d.model_dump(mode="json") for d in manager.registry.list()]}


# ==================== Configs ====================


@router.get("/forms/{form_id}/integrations", summary="List a form's integrations")
async def list_integrations(
    form_id: str,
    manager: IntegrationManager = Depends(get_manager),
) -> dict[str, Any]:
    return {"integrations": [c.public_view() for c in manager.configs_for_form(form_id)]}


@router.post(
    "/forms/{form_id}/integrations",
    status_code=status.HTTP_201_CREATED,
    summary="Create or replace an integration",
    responses={
        409: {"description": "Integration id belongs to another form"},
        422: {"description": "Invalid integration config"},
    },
)
async def create_integration(
    form_id: str,
    body: dict[str, Any] = Body(...),
    manager: IntegrationManager = Depends(get_manager),
) -> dict[str, Any]:
    """
    Validate and store an integration config for a form.

    The form id in the path wins over any form_id in the body.
    An existing config may only be replaced through its own form.
    """
    try:
        config = IntegrationConfig.model_validate({**body, "form_id": form_id})
    except pydantic.ValidationError as e:
        raise HTTPException(status_code=422, detail=_error_details(e.errors())) from e

    existing = manager.get_config(config.id)
    if existing is not None and existing.form_id != form_id:
        logger.warning(f"Form {form_id} tried to replace integration {config.id} of another form")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Integration {config.id} belongs to another form",
        )

    try:
        manager.register_config(config)
    except ValidationError as e:
        logger.info(f"Rejected {config.destination_type} config for form {form_id}: {e}")
        raise HTTPException(
            status_code=422,
            detail={"message": str(e), "errors": _error_details(e.validation_errors)},
        ) from e

    return config.public_view()


@router.delete(
    "/forms/{form_id}/integrations/{config_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an integration",
)
async def delete_integration(
    form_id: str,
    config_id: str,
    manager: IntegrationManager = Depends(get_manager),
) -> None:
    _get_form_config(manager, form_id, config_id)
    manager.remove_config(config_id)


@router.post(
    "/forms/{form_id}/integrations/{config_id}/test",
    summary="Test an integration's connectivity",
)
async def test_integration(
    form_id: str,
    config_id: str,
    manager: IntegrationManager = Depends(get_manager),
) -> dict[str, Any]:
    _get_form_config(manager, form_id, config_id)
    result = await manager.test_config(config_id)
    return result.to_dict()


# ==================== Events ====================


@router.post(
    "/forms/{form_id}/events",
    summary="Dispatch a form event to its integrations",
    responses={
        200: {"description": "Event dispatched (wait=true)"},
        202: {"description": "Event accepted for background dispatch"},
        422: {"description": "Invalid event payload"},
    },
)
async def receive_event(
    form_id: str,
    body: dict[str, Any] = Body(...),
    wait: bool = Query(False, description="Wait for all deliveries and return their results"),
    manager: IntegrationManager = Depends(get_manager),
):
    """
    Accept one form lifecycle event.

    By default delivery runs in the background and the endpoint answers
    202 immediately. With `wait=true` the per-integration results are
    returned; individual failures do not change the status code.
    """
    try:
        payload = EventPayload.model_validate({"form_id": form_id, **body})
    except pydantic.ValidationError as e:
        raise HTTPException(status_code=422, detail=_error_details(e.errors())) from e

    if payload.form_id != form_id:
        raise HTTPException(status_code=400, detail="form_id in body does not match path")

    if not wait:
        manager.dispatch_background(form_id, payload)
        logger.info(f"Queued {payload.event.value} for form {form_id}")
        return _accepted(form_id, payload)

    try:
        results = await manager.dispatch(form_id, payload)
    except MalformedPayloadError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return {
        "form_id": form_id,
        "event": payload.event.value,
        "delivered": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
        "results": [r.to_dict() for r in results],
    }


def _accepted(form_id: str, payload: EventPayload) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"status": "accepted", "form_id": form_id, "event": payload.event.value},
    )
