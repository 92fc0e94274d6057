"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from engagecam.api.middleware import verify_api_key
from engagecam.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelStatus,
    Prediction,
    PredictResponse,
    SessionStatus,
    TallyResponse,
)
from engagecam.ml.inference import InferenceBusyError
from engagecam.ml.model_manager import ModelLoadError, NoModelLoadedError, UploadedFile
from engagecam.ml.preprocessing import decode_image
from engagecam.render import environment, render_graph
from engagecam.session import PredictionLoop
from engagecam.tally import format_percentage, max_category, summarize

if TYPE_CHECKING:
    from engagecam.config import Settings
    from engagecam.ml.inference import InferencePool
    from engagecam.ml.model_manager import LoadedModel, OnnxModelManager
    from engagecam.session import FrameResult, WebcamSession
    from engagecam.tally import TallyBoard

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])
pages = APIRouter()

templates = Jinja2Templates(env=environment)

PAGE_REFRESH_SECONDS = 1

_NO_MODEL = {status.HTTP_409_CONFLICT: {"model": ErrorResponse}}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def _get_session(request: Request) -> WebcamSession:
    session: WebcamSession = request.app.state.webcam_session
    return session


def _require_model(request: Request) -> LoadedModel:
    try:
        return _get_model_manager(request).require_active()
    except NoModelLoadedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No model loaded") from exc


def _model_status(loaded: LoadedModel) -> ModelStatus:
    classifier = loaded.classifier
    return ModelStatus(
        name=classifier.model_name,
        labels=classifier.class_labels,
        total_classes=classifier.total_classes,
        image_size=classifier.image_size,
        source=str(loaded.source),
        source_kind=loaded.source.kind,
        loaded_at=loaded.loaded_at,
    )


def _tally_response(tally: TallyBoard) -> TallyResponse:
    tallies, frames_seen = tally.state()
    category = max_category(tallies)
    return TallyResponse(
        tallies=tallies,
        max_category=category,
        summary=summarize(category),
        frames_seen=frames_seen,
        threshold=tally.threshold,
        mode=tally.mode,
    )


def _predict_response(result: FrameResult, tally: TallyBoard) -> PredictResponse:
    return PredictResponse(
        predictions=[
            Prediction(
                label=p.label,
                confidence=min(max(p.confidence, 0.0), 1.0),
                percentage=format_percentage(p.confidence),
            )
            for p in result.predictions
        ],
        labels=result.labels,
        incremented=result.incremented,
        tally=TallyResponse(
            tallies=result.tallies,
            max_category=result.max_category,
            summary=result.summary,
            frames_seen=result.frames_seen,
            threshold=tally.threshold,
            mode=tally.mode,
        ),
    )


def _session_status(session: WebcamSession) -> SessionStatus:
    return SessionStatus(running=session.running, frames=session.frames, last_error=session.last_error)


async def _read_upload(upload: UploadFile | None, max_size: int) -> UploadedFile | None:
    # Browsers submit empty file inputs as a part with no filename.
    if upload is None or not upload.filename:
        return None
    content = await upload.read()
    if len(content) > max_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"{upload.filename} exceeds {max_size} bytes",
        )
    return UploadedFile(filename=upload.filename, content=content)


async def _load_pretrained(request: Request) -> LoadedModel:
    manager = _get_model_manager(request)
    try:
        return await run_in_threadpool(manager.load_pretrained)
    except ModelLoadError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


async def _upload_model(
    request: Request,
    model_file: UploadFile | None,
    metadata_file: UploadFile | None,
    weights_files: list[UploadFile] | None,
) -> LoadedModel:
    settings = _get_settings(request)
    manager = _get_model_manager(request)

    model = await _read_upload(model_file, settings.max_file_size)
    metadata = await _read_upload(metadata_file, settings.max_file_size)
    weights = [w for w in [await _read_upload(f, settings.max_file_size) for f in weights_files or []] if w]

    try:
        return await run_in_threadpool(manager.load_from_files, model, metadata, weights)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ModelLoadError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


async def _start_session(request: Request) -> WebcamSession:
    _require_model(request)
    session = _get_session(request)
    if session.running:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Webcam session already running")
    try:
        await run_in_threadpool(session.start)
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return session


def _back_to_index(error: str | None = None) -> RedirectResponse:
    url = "/" if error is None else f"/?{urlencode({'error': error})}"
    return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


@router.get(
    "/model",
    response_model=ModelStatus,
    responses=_NO_MODEL,
    summary="Describe the active model",
)
async def get_model(request: Request) -> ModelStatus:
    return _model_status(_require_model(request))


@router.post(
    "/model/pretrained",
    response_model=ModelStatus,
    responses={status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse}},
    summary="Load the configured pretrained model",
)
async def load_pretrained(request: Request) -> ModelStatus:
    """Load the bundle at ENGAGECAM_PRETRAINED_URL and start a fresh tally."""
    return _model_status(await _load_pretrained(request))


@router.post(
    "/model/upload",
    response_model=ModelStatus,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    },
    summary="Load a model from uploaded files",
)
async def upload_model(
    request: Request,
    model_file: Annotated[UploadFile | None, File()] = None,
    metadata_file: Annotated[UploadFile | None, File()] = None,
    weights_files: Annotated[list[UploadFile] | None, File()] = None,
) -> ModelStatus:
    """Load a model from an uploaded graph, its metadata, and any external weight files."""
    return _model_status(await _upload_model(request, model_file, metadata_file, weights_files))


# ---------------------------------------------------------------------------
# Prediction & tallies
# ---------------------------------------------------------------------------


@router.post(
    "/predict",
    response_model=PredictResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify one frame and update the tally",
)
async def predict(request: Request, file: UploadFile) -> PredictResponse:
    settings = _get_settings(request)
    loaded = _require_model(request)

    try:
        image = decode_image(
            await file.read(),
            max_file_size=settings.max_file_size,
            max_pixels=settings.max_image_pixels,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    loop = PredictionLoop.for_model(loaded)
    try:
        result = await _get_inference_pool(request).run(loop.step, image)
    except InferenceBusyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _predict_response(result, loaded.tally)


@router.get("/tallies", response_model=TallyResponse, responses=_NO_MODEL, summary="Current tallies")
async def get_tallies(request: Request) -> TallyResponse:
    return _tally_response(_require_model(request).tally)


@router.delete("/tallies", response_model=TallyResponse, responses=_NO_MODEL, summary="Reset tallies")
async def reset_tallies(request: Request) -> TallyResponse:
    tally = _require_model(request).tally
    tally.reset()
    logger.info("Tallies reset")
    return _tally_response(tally)


@router.get(
    "/graph",
    response_class=HTMLResponse,
    responses=_NO_MODEL,
    summary="Tallies rendered as an HTML bar graph",
)
async def graph(request: Request) -> HTMLResponse:
    return HTMLResponse(render_graph(_require_model(request).tally.snapshot()))


# ---------------------------------------------------------------------------
# Webcam session
# ---------------------------------------------------------------------------


@router.get("/session", response_model=SessionStatus, summary="Webcam session state")
async def session_status(request: Request) -> SessionStatus:
    return _session_status(_get_session(request))


@router.post(
    "/session/start",
    response_model=SessionStatus,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Start classifying frames from the server's webcam",
)
async def start_session(request: Request) -> SessionStatus:
    return _session_status(await _start_session(request))


@router.post("/session/stop", response_model=SessionStatus, summary="Stop the webcam session")
async def stop_session(request: Request) -> SessionStatus:
    session = _get_session(request)
    await run_in_threadpool(session.stop)
    return _session_status(session)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        device=settings.device,
        gpu=settings.device == "cuda",
        model_loaded=_get_model_manager(request).active is not None,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        session=_session_status(_get_session(request)),
    )


# ---------------------------------------------------------------------------
# Page
# ---------------------------------------------------------------------------


@pages.get("/", response_class=HTMLResponse, include_in_schema=False)
async def index(request: Request) -> HTMLResponse:
    loaded = _get_model_manager(request).active
    session = _get_session(request)
    last = session.last_result
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "model": loaded,
            "error": request.query_params.get("error"),
            "session_running": session.running,
            "refresh_seconds": PAGE_REFRESH_SECONDS,
            "prediction_lines": last.labels if last is not None else [],
            "graph": render_graph(loaded.tally.snapshot()) if loaded is not None else "",
        },
    )


@pages.post("/model/pretrained", include_in_schema=False)
async def index_load_pretrained(request: Request) -> RedirectResponse:
    try:
        await _load_pretrained(request)
    except HTTPException as exc:
        return _back_to_index(exc.detail)
    return _back_to_index()


@pages.post("/model/upload", include_in_schema=False)
async def index_upload_model(
    request: Request,
    model_file: Annotated[UploadFile | None, File()] = None,
    metadata_file: Annotated[UploadFile | None, File()] = None,
    weights_files: Annotated[list[UploadFile] | None, File()] = None,
) -> RedirectResponse:
    try:
        await _upload_model(request, model_file, metadata_file, weights_files)
    except HTTPException as exc:
        return _back_to_index(exc.detail)
    return _back_to_index()


@pages.post("/session/start", include_in_schema=False)
async def index_start_session(request: Request) -> RedirectResponse:
    try:
        await _start_session(request)
    except HTTPException as exc:
        return _back_to_index(exc.detail)
    return _back_to_index()


@pages.post("/session/stop", include_in_schema=False)
async def index_stop_session(request: Request) -> RedirectResponse:
    await run_in_threadpool(_get_session(request).stop)
    return _back_to_index()
