from __future__ import annotations

import json
import logging
from html import escape
from typing import Annotated, Any, Dict, Literal, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from .config import Settings
from .errors import (
    CorruptConfig,
    DuplicateTitle,
    NotFound,
    NotificationError,
    StorageError,
    SurveyNotFound,
    SurveyStoreError,
    SurveyValidationError,
)
from .mailer import SubmissionMailer
from .storage import get_storage_backend
from .surveys.identity import hash_of
from .surveys.repository import SurveyRepository
from .surveys.schema import Submission
from .surveys.validation import is_valid_hex_color


logger = logging.getLogger(__name__)

DEFAULT_ACCENT_COLOR = "#2563eb"


def _auth_dependency(
    request: Request,
    token: Optional[str] = Query(default=None),
) -> None:
    settings: Settings = request.app.state.settings
    required = settings.admin_token.strip()
    if not required:
        # No token configured: allow access (dev mode)
        return
    supplied = token or request.headers.get("X-Admin-Token")
    if supplied != required:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _repository(request: Request) -> SurveyRepository:
    return request.app.state.repository


Auth = Annotated[None, Depends(_auth_dependency)]
Repo = Annotated[SurveyRepository, Depends(_repository)]


async def _json_object(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def build_repository(settings: Settings) -> SurveyRepository:
    return SurveyRepository(
        get_storage_backend(settings),
        key=settings.surveys_key,
        seed_path=settings.seed_path,
    )


async def log_routes(repo: SurveyRepository, settings: Settings) -> None:
    base = settings.public_base_url.rstrip("/")
    logger.info("=== Survey Routes ===")
    for survey in await repo.list_surveys():
        logger.info("Survey: %s -> %s/survey/%s", survey.title, base, survey.hash)
    logger.info("Admin: %s/admin/surveys?token=%s", base, settings.admin_token)
    logger.info("=====================")


def _register_error_handlers(app: FastAPI) -> None:
    def _error(status_code: int, exc: Exception, **extra: Any) -> JSONResponse:
        return JSONResponse({"error": str(exc), **extra}, status_code=status_code)

    @app.exception_handler(SurveyValidationError)
    async def _validation(request: Request, exc: SurveyValidationError) -> JSONResponse:
        return _error(400, exc, errors=exc.errors)

    @app.exception_handler(DuplicateTitle)
    async def _duplicate(request: Request, exc: DuplicateTitle) -> JSONResponse:
        return _error(409, exc)

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound) -> JSONResponse:
        return _error(404, exc)

    @app.exception_handler(CorruptConfig)
    async def _corrupt(request: Request, exc: CorruptConfig) -> JSONResponse:
        logger.error("Corrupt surveys document: %s", exc)
        return _error(500, exc)

    @app.exception_handler(StorageError)
    async def _storage(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage failure: %s", exc)
        return JSONResponse({"error": "Storage unavailable"}, status_code=502)

    @app.exception_handler(NotificationError)
    async def _notification(request: Request, exc: NotificationError) -> JSONResponse:
        return _error(502, exc)


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[SurveyRepository] = None,
    mailer: Optional[SubmissionMailer] = None,
) -> FastAPI:
    app = FastAPI(title="SurWhen", version="0.1.0")
    app.state.settings = settings or Settings()
    app.state.repository = repository or build_repository(app.state.settings)
    app.state.mailer = mailer or SubmissionMailer(app.state.settings)
    _register_error_handlers(app)

    @app.on_event("startup")
    async def _startup() -> None:
        try:
            await log_routes(app.state.repository, app.state.settings)
        except SurveyStoreError as exc:
            logger.error("Could not list survey routes at startup: %s", exc)

    @app.get("/", response_class=RedirectResponse, include_in_schema=False)
    def root(_: Auth):  # type: ignore[no-untyped-def]
        return RedirectResponse(url="/admin/surveys")

    @app.get("/admin/health")
    def health() -> dict[str, str]:  # type: ignore[no-untyped-def]
        return {"status": "ok"}

    @app.get("/admin/surveys", response_class=HTMLResponse)
    async def surveys_overview(request: Request, repo: Repo, _: Auth) -> str:
        base = str(request.base_url).rstrip("/")
        rows = []
        for s in await repo.list_surveys():
            link = f"{base}/survey/{s.hash}"
            rows.append(
                f"<tr>"
                f"<td>{escape(s.title)}</td>"
                f"<td><code>{s.hash}</code></td>"
                f"<td>{len(s.reasons)}</td>"
                f"<td>{escape(s.target_email or '(default)')}</td>"
                f"<td><a href='{link}'>{link}</a></td>"
                f"</tr>"
            )
        body = "".join(rows) or "<tr><td colspan='5'>No surveys yet</td></tr>"
        return f"""
        <html>
          <head>
            <meta charset='utf-8' />
            <title>SurWhen Admin — Surveys</title>
            <style>
              body {{ font-family: system-ui, sans-serif; padding: 20px; }}
              table {{ border-collapse: collapse; width: 100%; }}
              th, td {{ border: 1px solid #ddd; padding: 8px; }}
              th {{ background: #f6f6f6; text-align: left; }}
            </style>
          </head>
          <body>
            <h1>Surveys</h1>
            <table>
              <thead>
                <tr>
                  <th>Title</th>
                  <th>Hash</th>
                  <th>Reasons</th>
                  <th>Target email</th>
                  <th>Share link</th>
                </tr>
              </thead>
              <tbody>
                {body}
              </tbody>
            </table>
          </body>
        </html>
        """

    # -- admin JSON API -------------------------------------------------------

    @app.get("/api/admin/surveys")
    async def admin_list_surveys(repo: Repo, _: Auth) -> Dict[str, Any]:
        config = await repo.load()
        return {
            "defaultTargetEmail": config.default_target_email,
            "accentColor": config.accent_color,
            "surveys": [{**s.to_dict(), "hash": hash_of(s.title)} for s in config.surveys],
        }

    @app.post("/api/admin/surveys")
    async def admin_add_survey(request: Request, repo: Repo, _: Auth) -> Dict[str, Any]:
        body = await _json_object(request)
        survey = await repo.add_survey(body)
        return {"success": True, "hash": hash_of(survey.title)}

    @app.put("/api/admin/surveys")
    async def admin_update_survey(request: Request, repo: Repo, _: Auth) -> Dict[str, Any]:
        body = await _json_object(request)
        survey_hash = body.pop("hash", None)
        if not survey_hash:
            raise HTTPException(status_code=400, detail="Hash is required")
        survey = await repo.update_survey(survey_hash, body)
        return {"success": True, "hash": hash_of(survey.title)}

    @app.delete("/api/admin/surveys")
    async def admin_delete_survey(
        repo: Repo,
        _: Auth,
        survey_hash: Optional[str] = Query(default=None, alias="hash"),
    ) -> Dict[str, Any]:
        if not survey_hash:
            raise HTTPException(status_code=400, detail="Hash is required")
        await repo.delete_survey(survey_hash)
        return {"success": True}

    @app.put("/api/admin/config")
    async def admin_update_config(request: Request, repo: Repo, _: Auth) -> Dict[str, Any]:
        body = await _json_object(request)
        email = body.get("defaultTargetEmail")
        if not email:
            raise HTTPException(status_code=400, detail="defaultTargetEmail is required")
        await repo.update_default_target_email(email)
        return {"success": True}

    @app.put("/api/admin/accent-color")
    async def admin_update_accent_color(request: Request, repo: Repo, _: Auth) -> Dict[str, Any]:
        body = await _json_object(request)
        color = body.get("accentColor") or None
        if color is not None and not is_valid_hex_color(color):
            raise HTTPException(status_code=400, detail="Invalid color format")
        await repo.update_accent_color(color)
        return {"success": True, "accentColor": color or DEFAULT_ACCENT_COLOR}

    @app.get("/api/admin/config/download")
    async def admin_download_config(repo: Repo, _: Auth) -> Response:
        return Response(
            content=await repo.export_config(),
            media_type="application/json",
            headers={"Content-Disposition": 'attachment; filename="surveys.json"'},
        )

    @app.post("/api/admin/config/upload")
    async def admin_upload_config(
        request: Request,
        repo: Repo,
        _: Auth,
        strategy: Literal["replace", "merge"] = Query(...),
        conflict_preference: Literal["source", "existing"] = Query(default="existing", alias="conflictPreference"),
    ) -> Dict[str, Any]:
        try:
            raw = json.loads(await request.body())
        except ValueError:
            raise HTTPException(status_code=400, detail="Uploaded file is not valid JSON")
        result = await repo.import_config(raw, strategy, conflict_preference)
        return {"success": True, "surveys": len(result.surveys)}

    # -- public API -----------------------------------------------------------

    @app.get("/api/surveys/{survey_hash}")
    async def get_survey(survey_hash: str, repo: Repo) -> Dict[str, Any]:
        survey = await repo.get_by_hash(survey_hash)
        if survey is None:
            raise SurveyNotFound(survey_hash)
        return survey.to_dict()

    @app.get("/api/accent-color")
    async def get_accent_color(repo: Repo) -> Dict[str, str]:
        try:
            config = await repo.load()
        except SurveyStoreError as exc:
            logger.error("Error fetching accent color: %s", exc)
            return {"accentColor": DEFAULT_ACCENT_COLOR}
        return {"accentColor": config.accent_color or DEFAULT_ACCENT_COLOR}

    @app.post("/api/submit")
    async def submit(request: Request, repo: Repo) -> Dict[str, Any]:
        body = await _json_object(request)
        survey_hash, name, reason = body.get("hash"), body.get("name"), body.get("reason")
        if not survey_hash or not name or not reason:
            raise HTTPException(status_code=400, detail="Missing required fields")

        survey = await repo.get_by_hash(survey_hash)
        if survey is None:
            raise HTTPException(status_code=404, detail="Invalid survey hash")

        target_email = await repo.get_target_email(survey)
        if not target_email:
            logger.warning("No target email for survey %r; set a default target email", survey.title)
        await request.app.state.mailer.send(
            Submission(
                survey_title=survey.title,
                survey_description=survey.description,
                target_email=target_email,
                name=str(name),
                reason=str(reason),
                user_email=str(body["email"]) if body.get("email") else None,
            )
        )
        return {"success": True}

    return app


async def run_admin() -> None:
    settings = Settings()
    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.admin_host,
        port=settings.admin_port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
