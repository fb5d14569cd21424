"""Ingest endpoints: upload a chat export and poll ingestion progress."""

from __future__ import annotations

import io
import zipfile
from dataclasses import asdict
from typing import Annotated

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Response,
    UploadFile,
    status,
)
from src.api.dependencies import PROVIDER_ERRORS, Services, get_services
from src.api.models import IngestAccepted, IngestProgressResponse, IngestResponse
from src.ingestion.pipeline import IngestionPipeline
from src.pipeline_config import IngestionOptions

router = APIRouter()

# 50 MB upload limit (compressed upload)
MAX_UPLOAD_BYTES = 50 * 1024 * 1024

# Zip bomb protection
MAX_ZIP_MEMBERS = 50
MAX_ZIP_MEMBER_BYTES = 100 * 1024 * 1024
MAX_ZIP_TOTAL_BYTES = 200 * 1024 * 1024


def _read_zip_export(raw: bytes) -> str:
    """Return the text of the first ``.txt`` member of a zipped export.

    Raises:
        HTTPException(400): Not a zip, no ``.txt`` member, or not UTF-8.
        HTTPException(413): Archive exceeds the member or size limits.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(raw))
    except zipfile.BadZipFile as exc:
        raise HTTPException(status_code=400, detail=f"Invalid zip file: {exc}") from exc

    with zf:
        members = [m for m in zf.infolist() if not m.is_dir()]

        if len(members) > MAX_ZIP_MEMBERS:
            raise HTTPException(
                status_code=413,
                detail=f"Zip contains {len(members)} files; maximum is {MAX_ZIP_MEMBERS}.",
            )

        # Declared sizes are checked before anything is decompressed.
        total_uncompressed = sum(m.file_size for m in members)
        if total_uncompressed > MAX_ZIP_TOTAL_BYTES:
            raise HTTPException(
                status_code=413,
                detail=(
                    f"Zip would expand to {total_uncompressed // (1024 * 1024)} MB; "
                    f"maximum is {MAX_ZIP_TOTAL_BYTES // (1024 * 1024)} MB."
                ),
            )

        export = next((m for m in members if m.filename.lower().endswith(".txt")), None)
        if export is None:
            raise HTTPException(status_code=400, detail="Zip contains no .txt chat export.")
        if export.file_size > MAX_ZIP_MEMBER_BYTES:
            raise HTTPException(
                status_code=413,
                detail=(
                    f"{export.filename}: file too large "
                    f"(max {MAX_ZIP_MEMBER_BYTES // (1024 * 1024)} MB)"
                ),
            )
        return _decode(zf.read(export))


def _decode(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="Export is not valid UTF-8 text.") from exc


async def _ingest_in_background(
    pipeline: IngestionPipeline,
    content: str,
    conversation_name: str,
    options: IngestionOptions,
    job_id: str,
) -> None:
    try:
        await pipeline.ingest(content, conversation_name, options, job_id=job_id)
    except Exception:
        # The pipeline has logged the error and marked the job failed.
        return


@router.post(
    "/api/ingest",
    response_model=IngestResponse | IngestAccepted,
    responses={202: {"model": IngestAccepted}},
)
async def ingest(
    file: Annotated[UploadFile, File(...)],
    response: Response,
    background_tasks: BackgroundTasks,
    services: Annotated[Services, Depends(get_services)],
    conversation_name: Annotated[str | None, Form()] = None,
    chunk_gap_minutes: Annotated[float | None, Form(gt=0)] = None,
    chunk_max_messages: Annotated[int | None, Form(ge=1)] = None,
    generate_summaries: Annotated[bool, Form()] = False,
    include_system_messages: Annotated[bool, Form()] = True,
    include_deleted_messages: Annotated[bool, Form()] = False,
    wait: Annotated[bool, Form()] = True,
) -> IngestResponse | IngestAccepted:
    """Upload a WhatsApp ``.txt`` export (or a ``.zip`` holding one) and ingest it.

    With ``wait=false`` the job runs after the response is sent and the
    endpoint answers 202 with the job id to poll.
    """
    raw = await file.read()
    if len(raw) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum size is {MAX_UPLOAD_BYTES // (1024 * 1024)} MB.",
        )

    filename = file.filename or ""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    content_type = (file.content_type or "").lower()

    if ext == "zip" or content_type in ("application/zip", "application/x-zip-compressed"):
        content = _read_zip_export(raw)
    elif ext == "txt" or content_type.startswith("text/"):
        content = _decode(raw)
    else:
        raise HTTPException(
            status_code=400, detail="Unsupported file type. Upload a .txt export or a .zip."
        )

    name = conversation_name or (filename.rsplit(".", 1)[0] if filename else "WhatsApp chat")
    options = services.settings.ingestion_options(
        chunk_gap_minutes=chunk_gap_minutes,
        chunk_max_messages=chunk_max_messages,
        generate_summaries=generate_summaries,
        include_system_messages=include_system_messages,
        include_deleted_messages=include_deleted_messages,
    )

    if not wait:
        job_id = services.pipeline.new_job()
        background_tasks.add_task(
            _ingest_in_background, services.pipeline, content, name, options, job_id
        )
        response.status_code = status.HTTP_202_ACCEPTED
        return IngestAccepted(job_id=job_id)

    try:
        result = await services.pipeline.ingest(content, name, options)
    except PROVIDER_ERRORS as exc:
        raise HTTPException(status_code=503, detail=f"Provider unavailable: {exc}") from exc

    return IngestResponse(**asdict(result))


@router.get("/api/ingest/{job_id}", response_model=IngestProgressResponse)
async def ingest_progress(
    job_id: str,
    services: Annotated[Services, Depends(get_services)],
) -> IngestProgressResponse:
    """Return the progress of an ingestion job."""
    progress = services.pipeline.get_progress(job_id)
    if progress is None:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
    return IngestProgressResponse(**asdict(progress))
