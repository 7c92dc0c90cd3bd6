from __future__ import annotations

import logging
import shutil
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from ax2_studio.analysis.media import ProbeError, probe_duration
from ax2_studio.core.auth import AccountContext, session_from_headers
from ax2_studio.core.config import Settings, settings as default_settings
from ax2_studio.core.errors import (
    InsufficientCreditsError,
    JobNotFoundError,
    JobStateError,
    ReservationClosedError,
    ReservationNotFoundError,
    StorageWriteError,
    StudioError,
)
from ax2_studio.core.jobs import Job, JobState, VideoMetadata
from ax2_studio.core.logs import configure_logging
from ax2_studio.core.security import create_download_token, verify_download_token
from ax2_studio.core.services import Services, build_services
from ax2_studio.core.storage import VideoArtifact
from ax2_studio.ledger.credits import compute_required_credits
from ax2_studio.models.schemas import (
    ArtifactResponse,
    AuthRequest,
    AuthResponse,
    BalanceResponse,
    ChargeRequest,
    EligibilityResponse,
    ExtensionRequest,
    ExtensionResponse,
    HistoryEntryResponse,
    JobCreateResponse,
    JobDetailResponse,
    LedgerPreview,
    StorageQuotaResponse,
    SweepResponse,
)

logger = logging.getLogger(__name__)

VIDEO_TYPES = {"video/mp4", "video/quicktime", "video/webm", "video/x-matroska", "video/x-msvideo"}

STATUS_BY_ERROR = {
    InsufficientCreditsError: 402,
    JobNotFoundError: 404,
    ReservationNotFoundError: 404,
    JobStateError: 409,
    ReservationClosedError: 409,
    StorageWriteError: 503,
}


def create_app(services: Services | None = None, settings: Settings = default_settings) -> FastAPI:
    services = services or build_services(settings)
    settings = services.settings
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.lifecycle.recover_interrupted_jobs()
        services.sweeper.start()
        yield
        services.sweeper.stop()
        services.lifecycle.shutdown()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-User-Email", "X-Device-Id"],
    )

    @app.exception_handler(StudioError)
    async def studio_error_handler(request: Request, exc: StudioError) -> JSONResponse:
        status = next((code for kind, code in STATUS_BY_ERROR.items() if isinstance(exc, kind)), 400)
        return JSONResponse(status_code=status, content={"code": exc.code, "detail": exc.message})

    _register_routes(app)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_session(
    services: Services = Depends(get_services),
    x_device_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> AccountContext:
    account = session_from_headers(x_device_id, x_user_email)
    services.ledger.ensure_welcome_grant(account)
    return account


def get_duration_probe() -> Callable[[Path], float]:
    return probe_duration


def _job_detail(job: Job) -> JobDetailResponse:
    return JobDetailResponse(
        id=job.id,
        status=job.status.value,
        progress=job.progress,
        message=job.status_text,
        original_lang=job.original_lang,
        target_languages=job.target_languages,
        required_credits=job.required_credits,
        is_free_trial=job.is_free_trial,
        error=job.error,
        reason=job.reason,
        refunded_amount=job.refunded_amount,
        failed_languages=job.failed_languages,
        artifact_ids=job.artifact_ids,
    )


def _artifact_response(artifact: VideoArtifact, account: AccountContext, settings: Settings) -> ArtifactResponse:
    download_url = None
    if artifact.downloadable:
        token = create_download_token(
            artifact.id, account.account_id, settings.hmac_secret, not_after=artifact.expires_at
        )
        download_url = f"/api/artifacts/{artifact.id}/download?token={token}"
    return ArtifactResponse(
        id=artifact.id,
        job_id=artifact.job_id,
        title=artifact.title,
        language_code=artifact.language_code,
        is_original=artifact.is_original,
        expires_at=artifact.expires_at,
        downloadable=artifact.downloadable,
        is_free_trial=artifact.is_free_trial,
        download_url=download_url,
    )


def _register_routes(app: FastAPI) -> None:
    @app.post("/api/auth/login", response_model=AuthResponse)
    async def login(
        payload: AuthRequest,
        services: Services = Depends(get_services),
        x_device_id: Optional[str] = Header(None),
    ) -> AuthResponse:
        account = session_from_headers(x_device_id, payload.email)
        granted = services.ledger.ensure_welcome_grant(account)
        return AuthResponse(
            account_id=account.account_id,
            logged_in=account.is_logged_in,
            pool=account.pool,
            balance=services.ledger.get_balance(account),
            welcome_granted=granted,
        )

    @app.get("/api/credits/balance", response_model=BalanceResponse)
    async def balance(
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
    ) -> BalanceResponse:
        return BalanceResponse(pool=account.pool, balance=services.ledger.get_balance(account))

    @app.get("/api/credits/estimate", response_model=LedgerPreview)
    async def estimate(
        duration: float = Query(..., ge=0),
        languages: int = Query(0, ge=0),
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
    ) -> LedgerPreview:
        required = compute_required_credits(duration, languages)
        current = services.ledger.get_balance(account)
        return LedgerPreview(required_credits=required, balance=current, affordable=required <= current)

    @app.get("/api/credits/history", response_model=List[HistoryEntryResponse])
    async def history(
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
    ) -> List[HistoryEntryResponse]:
        return [
            HistoryEntryResponse(
                date=entry.date,
                type=entry.type.value,
                description=entry.description,
                amount=entry.amount,
                balance_after=entry.balance_after,
                job_id=entry.job_id,
                reserved_id=entry.reserved_id,
            )
            for entry in services.ledger.history(account)
        ]

    @app.post("/api/credits/charge", response_model=BalanceResponse)
    async def charge(
        payload: ChargeRequest,
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
    ) -> BalanceResponse:
        new_balance = services.ledger.charge_credits(account, payload.amount, payload.description)
        return BalanceResponse(pool=account.pool, balance=new_balance)

    @app.get("/api/free-trial/eligibility", response_model=EligibilityResponse)
    async def free_trial_eligibility(
        duration: float = Query(..., ge=0),
        languages: int = Query(0, ge=0),
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
    ) -> EligibilityResponse:
        result = services.trial_gate.check_eligibility(account, duration, languages)
        return EligibilityResponse(eligible=result.eligible, reason=result.reason)

    @app.post("/api/jobs", response_model=JobCreateResponse)
    def create_job(
        video: UploadFile = File(...),
        original_lang: str = Form("auto"),
        target_langs: str = Form(""),
        use_free_trial: bool = Form(False),
        accept_reduced_languages: bool = Form(False),
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
        probe: Callable[[Path], float] = Depends(get_duration_probe),
    ) -> JobCreateResponse:
        if not services.limiter.allow(account.account_id):
            raise HTTPException(status_code=429, detail="rate_limited")
        if video.content_type not in VIDEO_TYPES:
            raise HTTPException(status_code=400, detail="unsupported video format")
        languages = [code.strip() for code in target_langs.split(",") if code.strip()]

        video_id = str(uuid.uuid4())
        upload_dir = services.settings.data_dir / "uploads"
        upload_dir.mkdir(parents=True, exist_ok=True)
        upload_path = upload_dir / f"{video_id}{Path(video.filename or 'video.mp4').suffix}"
        with upload_path.open("wb") as f:
            shutil.copyfileobj(video.file, f)

        try:
            duration = probe(upload_path)
        except ProbeError as exc:
            upload_path.unlink(missing_ok=True)
            raise HTTPException(status_code=400, detail=f"could not read video duration: {exc}") from exc

        metadata = VideoMetadata(
            video_id=video_id,
            file_name=video.filename or "video.mp4",
            duration=duration,
            size_bytes=upload_path.stat().st_size,
            content_type=video.content_type,
            source_path=str(upload_path),
        )
        job_id = services.lifecycle.submit_translation_job(
            account,
            metadata,
            original_lang,
            languages,
            accept_free_trial=use_free_trial,
            accept_reduced_scope=accept_reduced_languages,
        )
        job = services.lifecycle.get_job(account, job_id)
        if job.status == JobState.FAILED:
            raise HTTPException(
                status_code=402,
                detail={"code": job.error, "job_id": job.id, "message": job.status_text},
            )
        return JobCreateResponse(id=job.id, status=job.status.value, message=job.status_text)

    @app.get("/api/jobs/{job_id}", response_model=JobDetailResponse)
    async def get_job(
        job_id: str,
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
    ) -> JobDetailResponse:
        return _job_detail(services.lifecycle.get_job(account, job_id))

    @app.post("/api/jobs/{job_id}/cancel", response_model=JobDetailResponse)
    def cancel_job(
        job_id: str,
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
    ) -> JobDetailResponse:
        return _job_detail(services.lifecycle.cancel_job(account, job_id))

    @app.get("/api/artifacts", response_model=List[ArtifactResponse])
    async def list_artifacts(
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
    ) -> List[ArtifactResponse]:
        return [
            _artifact_response(artifact, account, services.settings)
            for artifact in services.storage.list_artifacts(account)
        ]

    @app.get("/api/artifacts/{artifact_id}/download")
    async def download_artifact(
        artifact_id: str,
        token: str = Query(...),
        services: Services = Depends(get_services),
    ) -> FileResponse:
        payload = verify_download_token(token, services.settings.hmac_secret)
        if not payload:
            raise HTTPException(status_code=403, detail="invalid token")
        if payload.get("artifact_id") != artifact_id:
            raise HTTPException(status_code=403, detail="token mismatch")

        owner = AccountContext(account_id=payload["account_id"])
        artifact = services.storage.get_artifact(owner, artifact_id)
        if not artifact:
            raise HTTPException(status_code=404, detail="artifact not found")
        if not artifact.downloadable:
            raise HTTPException(status_code=403, detail="free trial videos cannot be downloaded")
        path = services.blobs.path(artifact_id)
        if not path or not path.exists():
            raise HTTPException(status_code=404, detail="artifact not ready")
        return FileResponse(path, filename=f"{artifact.title}.mp4", media_type="video/mp4")

    @app.get("/api/storage/quota", response_model=StorageQuotaResponse)
    async def storage_quota(
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
    ) -> StorageQuotaResponse:
        quota = services.storage.get_storage_quota(account)
        return StorageQuotaResponse(
            capacity_gb=quota.capacity_gb,
            period_days=quota.period_days,
            used_gb=quota.used_gb,
            extension=quota.extension,
        )

    @app.post("/api/storage/extensions", response_model=ExtensionResponse)
    async def purchase_extension(
        payload: ExtensionRequest,
        account: AccountContext = Depends(get_session),
        services: Services = Depends(get_services),
    ) -> ExtensionResponse:
        extension = services.storage.purchase_extension(account, payload.type)
        return ExtensionResponse(type=extension.type, expires_at=extension.expires_at)

    @app.post("/api/storage/sweep", response_model=SweepResponse)
    async def sweep(services: Services = Depends(get_services)) -> SweepResponse:
        return SweepResponse(evicted=services.storage.cleanup_expired_videos())

    @app.get("/api/health")
    async def health() -> dict:
        return {"ok": True, "service": "ax2-studio"}


def run() -> None:
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
