import asyncio
import json
from datetime import timedelta
from typing import Any

from fastapi import FastAPI, File, Form, Header, HTTPException, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from convert_dispatch import __version__
from convert_dispatch.config import Settings
from convert_dispatch.conversion import (
    CapabilityTable,
    ConversionBackend,
    Dispatcher,
    Engine,
    Invalid,
    Job,
    JobStatus,
    JobStore,
    NotFoundError,
    RetentionSweeper,
    StorageError,
    UploadTooLargeError,
    ValidationError,
    build_capability_table,
)
from convert_dispatch.conversion.adapters import HttpConversionBackend, LocalStorage
from convert_dispatch.logging_config import configure_logging, get_logger

logger = get_logger(name=__name__)


ENDPOINTS = {
    "public": [
        "GET /health",
        "GET /api/v1/info",
        "GET /api/v1/engines",
        "GET /api/v1/engines/{id}",
        "GET /api/v1/formats",
        "GET /api/v1/formats/{format}/targets",
        "POST /api/v1/validate",
    ],
    "authenticated": [
        "POST /api/v1/jobs",
        "GET /api/v1/jobs",
        "GET /api/v1/jobs/{id}",
        "GET /api/v1/jobs/{id}/result",
        "DELETE /api/v1/jobs/{id}",
    ],
    "admin": [
        "POST /api/v1/admin/cleanup?confirm=true",
    ],
}


class ValidateRequest(BaseModel):
    input_format: str
    output_format: str
    engine: str | None = None


def _error(status_code: int, code: str, message: str, **extra: object) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message, **extra})


def _caller_identity(x_user_id: str | None) -> str:
    # Set by the authenticating gateway in front of this service.
    owner = (x_user_id or "").strip()
    if not owner:
        raise _error(401, "unauthorized", "missing caller identity")
    return owner


def _engine_info(engine: Engine) -> dict[str, Any]:
    return {
        "id": engine.id,
        "name": engine.name,
        "description": engine.description,
        "category": engine.category,
        "supported_input_formats": engine.input_formats(),
        "supported_output_formats": engine.output_formats(),
        "available": engine.enabled,
        "parameters": engine.parameters,
    }


def _job_body(job: Job) -> dict[str, Any]:
    body = job.to_dict()
    body["links"] = {"self": f"/api/v1/jobs/{job.id}"}
    if job.status is JobStatus.COMPLETED:
        body["links"]["result"] = f"/api/v1/jobs/{job.id}/result"
    return body


def create_app(
    settings: Settings | None = None,
    *,
    backend: ConversionBackend | None = None,
    capabilities: CapabilityTable | None = None,
    store: JobStore | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    capabilities = capabilities or build_capability_table(settings.engines_file)
    store = store or JobStore()
    storage = LocalStorage(settings.upload_dir, settings.output_dir)
    backend = backend or HttpConversionBackend(settings.backend_url, timeout=settings.backend_timeout_sec)
    dispatcher = Dispatcher(
        capabilities,
        store,
        storage,
        backend,
        workers=settings.workers,
        max_upload_bytes=settings.max_upload_bytes,
    )
    sweeper = RetentionSweeper(store, storage)

    app = FastAPI(
        title="Conversion Job Dispatch Service",
        version=__version__,
        description=(
            "Submit a file and a target format, have it routed to a capable "
            "conversion engine, and poll the asynchronous job for the result."
        ),
    )
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.sweeper = sweeper

    @app.on_event("startup")
    async def _startup() -> None:
        configure_logging(settings.log_level)
        storage.ensure_roots()
        await dispatcher.start()
        sweeper.start(settings.sweep_interval_sec, timedelta(hours=settings.retention_hours))
        logger.info(
            "Dispatch service ready: {} engines, backend {}",
            len(capabilities), settings.backend_url,
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await sweeper.stop()
        await dispatcher.stop(grace=settings.shutdown_grace_sec)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Basic health check endpoint, including backend reachability."""
        backend_ok = await asyncio.to_thread(dispatcher.backend.health)
        return {"status": "ok", "backend": "ok" if backend_ok else "unavailable", "version": __version__}

    @app.get("/api/v1/info")
    def info() -> dict[str, Any]:
        engines = capabilities.list()
        return {
            "name": app.title,
            "version": __version__,
            "description": app.description,
            "documentation": app.docs_url,
            "endpoints": ENDPOINTS,
            "capabilities": {
                "total_engines": len(engines),
                "available_engines": sum(1 for e in engines if e.enabled),
                "max_file_size": settings.max_upload_bytes,
            },
        }

    @app.get("/api/v1/engines")
    def list_engines() -> dict[str, Any]:
        engines = [_engine_info(e) for e in capabilities.list()]
        return {"engines": engines, "total": len(engines)}

    @app.get("/api/v1/engines/{engine_id}")
    def get_engine(engine_id: str) -> dict[str, Any]:
        engine = capabilities.get(engine_id)
        if engine is None:
            raise _error(404, "engine_not_found", f"Engine '{engine_id}' not found")
        body = _engine_info(engine)
        body["conversions"] = [{"from": s, "to": t} for s, t in engine.conversion_pairs()]
        return body

    @app.get("/api/v1/formats")
    def list_formats() -> dict[str, list[str]]:
        return {"inputs": capabilities.all_input_formats(), "outputs": capabilities.all_output_formats()}

    @app.get("/api/v1/formats/{fmt}/targets")
    def format_targets(fmt: str) -> dict[str, Any]:
        targets = capabilities.targets_for(fmt)
        return {
            "format": fmt.lower(),
            "targets": [{"engine": engine_id, "outputs": outputs} for engine_id, outputs in targets.items()],
        }

    @app.post("/api/v1/validate")
    def validate(request: ValidateRequest) -> dict[str, Any]:
        result = dispatcher.resolver.resolve(request.input_format, request.output_format, request.engine)
        if isinstance(result, Invalid):
            return {"valid": False, "reason": result.reason, "suggestions": result.suggestions}
        return {
            "valid": True,
            "engine": result.engine_id,
            "available_engines": capabilities.engines_for(request.input_format, request.output_format),
        }

    @app.post("/api/v1/jobs", status_code=status.HTTP_202_ACCEPTED)
    async def create_job(
        file: UploadFile = File(...),
        target_format: str = Form(...),
        engine: str | None = Form(None),
        options: str | None = Form(None),
        x_user_id: str | None = Header(None),
    ) -> JSONResponse:
        """Create a conversion job from an uploaded file.

        Accepts multipart/form-data with parts "file", "target_format", and
        optionally "engine" and "options" (a JSON object passed to the engine).
        Returns 202 Accepted with the pending job.
        """
        owner = _caller_identity(x_user_id)
        parsed_options = None
        if options:
            try:
                parsed_options = json.loads(options)
            except json.JSONDecodeError:
                parsed_options = None
            if not isinstance(parsed_options, dict):
                raise _error(400, "invalid_options", "options must be a JSON object")

        async def read_chunk(n: int) -> bytes:
            return await file.read(n)

        try:
            submission = await dispatcher.submit(
                owner,
                file.filename or "",
                target_format,
                reader=read_chunk,
                options=parsed_options,
                engine=engine,
            )
        except UploadTooLargeError as e:
            raise _error(413, "payload_too_large", str(e))
        except ValidationError as e:
            raise _error(400, "unsupported_conversion", e.reason, suggestions=e.suggestions)
        except StorageError as e:
            raise _error(500, "storage_error", str(e))

        job = submission.job
        headers = {"Location": f"/api/v1/jobs/{job.id}"}
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=_job_body(job), headers=headers)

    @app.get("/api/v1/jobs")
    def list_jobs(x_user_id: str | None = Header(None)) -> dict[str, Any]:
        owner = _caller_identity(x_user_id)
        jobs = sorted(dispatcher.list_owned(owner), key=lambda j: j.created_at, reverse=True)
        return {"jobs": [_job_body(j) for j in jobs], "total": len(jobs)}

    @app.get("/api/v1/jobs/{job_id}")
    def get_job(job_id: str, x_user_id: str | None = Header(None)) -> dict[str, Any]:
        owner = _caller_identity(x_user_id)
        try:
            job = dispatcher.require_owned(job_id, owner)
        except NotFoundError as e:
            raise _error(404, "not_found", str(e))
        return _job_body(job)

    @app.delete("/api/v1/jobs/{job_id}")
    def delete_job(job_id: str, x_user_id: str | None = Header(None)) -> dict[str, str]:
        owner = _caller_identity(x_user_id)
        if not dispatcher.delete(job_id, owner):
            raise _error(404, "not_found", f"Job '{job_id}' not found")
        return {"message": "job deleted", "job_id": job_id}

    @app.get("/api/v1/jobs/{job_id}/result")
    def get_result(job_id: str, x_user_id: str | None = Header(None)) -> FileResponse:
        owner = _caller_identity(x_user_id)
        try:
            job = dispatcher.require_owned(job_id, owner)
        except NotFoundError as e:
            raise _error(404, "not_found", str(e))
        path = dispatcher.result_path(job_id, owner)
        if path is None:
            raise _error(404, "not_ready", f"result not available (job is {job.status.value})")
        if not path.exists():
            raise _error(404, "file_not_found", "output file not found")
        return FileResponse(path, filename=path.name)

    @app.post("/api/v1/admin/cleanup")
    async def run_cleanup(confirm: bool = False, x_user_id: str | None = Header(None)) -> dict[str, Any]:
        """Run a retention sweep now instead of waiting for the next interval.

        Restricted to ADMIN_USERS and requires ?confirm=true, since it deletes
        every job older than RETENTION_HOURS along with its files.
        """
        owner = _caller_identity(x_user_id)
        if owner not in settings.admin_users:
            logger.warning("Non-admin {!r} attempted cleanup", owner)
            raise _error(403, "forbidden", "admin access required")
        if not confirm:
            raise _error(
                400,
                "confirmation_required",
                "This is a destructive operation. Add '?confirm=true' to proceed.",
            )

        logger.info("Admin {!r} initiated manual cleanup", owner)
        report = await sweeper.sweep(timedelta(hours=settings.retention_hours))
        if report is None:
            raise _error(409, "cleanup_in_progress", "a retention sweep is already running")
        return {
            "success": True,
            "message": f"Cleanup completed. Jobs older than {settings.retention_hours:g} hours removed.",
            "jobs_removed": report.jobs_removed,
            "bytes_freed": report.bytes_freed,
        }

    return app


app = create_app()


def run() -> None:
    """Run the ASGI server using uvicorn.

    Binds to HOST:PORT (default 0.0.0.0:7890); RELOAD=true enables auto-reload.
    """
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run("convert_dispatch.webapi:app", host=settings.host, port=settings.port, reload=settings.reload)


if __name__ == "__main__":
    run()
