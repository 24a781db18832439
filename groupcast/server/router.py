from __future__ import annotations

import uuid
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from groupcast.core.errors import ActionError
from groupcast.domain.models import utcnow
from groupcast.observability.logging import bind_user_id, get_logger
from groupcast.observability import metrics
from groupcast.protocol.models import ActionRequest, ActionResponse

log = get_logger("router")

Handler = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]]


def action_msg(
    action: str,
    id_: str | None = None,
    payload: dict[str, Any] | None = None,
    ok: bool = True,
    err: dict[str, Any] | None = None,
) -> dict[str, Any]:
    res = ActionResponse(
        id=id_ or uuid.uuid4().hex,
        action=action,
        ts=utcnow(),
        ok=ok,
        payload=payload or {},
        err=err,
    )
    return res.model_dump(mode="json")


class ActionRouter:
    def __init__(self, handler_map: dict[str, Handler]):
        self.handler_map = handler_map

    async def handle(self, req: Any) -> dict[str, Any]:
        if not isinstance(req, dict):
            return action_msg(
                "error",
                ok=False,
                err={"code": "bad_request", "message": "expected a JSON object"},
            )
        req_id = req.get("id")
        action = req.get("action")
        if action is not None and (not isinstance(action, str) or action not in self.handler_map):
            return action_msg(
                str(action),
                id_=req_id,
                ok=False,
                err={"code": "no_such_action", "message": str(action)},
            )

        try:
            parsed = ActionRequest.model_validate(req)
        except ValidationError as e:
            return action_msg(
                str(action or "error"),
                id_=req_id,
                ok=False,
                err={"code": "bad_request", "message": str(e)},
            )

        handler = self.handler_map.get(parsed.action)
        if not handler:
            return action_msg(
                parsed.action,
                id_=parsed.id,
                ok=False,
                err={"code": "no_such_action", "message": parsed.action},
            )

        metrics.actions.labels(action=parsed.action).inc()
        bind_user_id(parsed.user_id)
        try:
            out = await handler(parsed.user_id, parsed.data)
            return action_msg(parsed.action, id_=parsed.id, payload=out, ok=True)
        except ActionError as e:
            metrics.action_errors.labels(action=parsed.action, code=e.code).inc()
            log.info("action_rejected", action=parsed.action, code=e.code, message=str(e))
            return action_msg(
                parsed.action,
                id_=parsed.id,
                ok=False,
                err={"code": e.code, "message": str(e), "retryable": e.retryable},
            )
        except Exception as e:
            metrics.action_errors.labels(action=parsed.action, code="internal").inc()
            log.exception("action_failed", action=parsed.action, err=str(e))
            return action_msg(
                parsed.action,
                id_=parsed.id,
                ok=False,
                err={"code": "internal", "message": "action_failed", "retryable": True},
            )
        finally:
            bind_user_id(None)
