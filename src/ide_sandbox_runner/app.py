"""FastAPI application for the sandbox runner."""

from __future__ import annotations

import logging
import secrets
import sys
from typing import Any

from .config import RunnerSettings, load_settings
from .errors import CapacityExceeded, InfrastructureFault, NotFoundError, ValidationError
from .logging_utils import setup_logging
from .service import ExecutionService

logger = logging.getLogger("ide_sandbox_runner")

SERVICE_NAME = "ide-sandbox-runner"
VERSION = "0.1.0"


def create_app(settings: RunnerSettings | None = None, service: ExecutionService | None = None):
    try:
        from fastapi import FastAPI, Header, HTTPException
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("請先安裝 sandbox runner 依賴：pip install -e .") from exc

    app = FastAPI(title="IDE Sandbox Runner", version=VERSION)
    runtime_settings = settings or load_settings()
    executions = service or ExecutionService(runtime_settings)
    app.state.service = executions

    def authorize(authorization: str | None) -> None:
        if not runtime_settings.api_key:
            return
        expected = f"Bearer {runtime_settings.api_key}"
        if not authorization or not secrets.compare_digest(authorization, expected):
            raise HTTPException(status_code=401, detail="unauthorized")

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            **executions.health_snapshot(),
            "stats": executions.stats(),
        }

    @app.get("/languages")
    def languages() -> dict[str, Any]:
        return {"languages": executions.registry.languages(), "profiles": executions.registry.snapshot()}

    @app.post("/run")
    def run(payload: dict[str, Any], authorization: str | None = Header(default=None)) -> dict[str, Any]:
        authorize(authorization)
        try:
            return executions.run(payload)  # type: ignore[arg-type, return-value]
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except CapacityExceeded as exc:
            raise HTTPException(status_code=429, detail=str(exc)) from exc
        except InfrastructureFault as exc:
            logger.error("sandbox 基礎設施錯誤：%s", exc)
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("sandbox run 發生未預期錯誤")
            raise HTTPException(status_code=500, detail="runner internal error") from exc

    @app.get("/executions/{execution_id}")
    def get_execution(execution_id: str, authorization: str | None = Header(default=None)) -> dict[str, Any]:
        authorize(authorization)
        if executions.is_active(execution_id):
            return {"id": execution_id, "execution_id": execution_id, "status": "running"}
        result = executions.get_execution(execution_id)
        if result is None:
            raise HTTPException(status_code=404, detail=f"找不到 execution：{execution_id}")
        return {"status": "finished", **result.to_response()}

    @app.post("/executions/{execution_id}/cancel")
    def cancel(execution_id: str, authorization: str | None = Header(default=None)) -> dict[str, Any]:
        authorize(authorization)
        if not executions.cancel(execution_id):
            raise HTTPException(status_code=404, detail=f"execution 不在執行中：{execution_id}")
        return {"id": execution_id, "execution_id": execution_id, "cancelled": True}

    return app


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_file)
    try:
        import uvicorn

        service = ExecutionService(settings)
        service.janitor.sweep(max_age_s=0)
        app = create_app(settings, service=service)
        uvicorn.run(app, host=settings.host, port=settings.port)
    except Exception as exc:  # noqa: BLE001
        logger.exception("runner 啟動失敗")
        print(f"runner 啟動失敗：{exc}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
