import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from nbis_service import NBISConfig, NBISService
from pipeline import (
    ComparisonResult,
    FailureKind,
    FingerprintPipeline,
    PipelineFailure,
    discard_artifacts,
)
from uploads import (
    DEFAULT_MAX_UPLOAD_BYTES,
    UploadRejected,
    UploadedFile,
    ensure_templates_directory,
    store_upload,
)

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SERVICE_NAME = "Fingerprint Matching API"
SERVICE_VERSION = "1.0.0"

# Initialize FastAPI app
app = FastAPI(
    title=SERVICE_NAME,
    description="Fingerprint template generation and matching using NIST NBIS (mindtct + bozorth3)",
    version=SERVICE_VERSION,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialized on startup
nbis_service: Optional[NBISService] = None
fingerprint_pipeline: Optional[FingerprintPipeline] = None
templates_dir = "templates"
max_upload_bytes = DEFAULT_MAX_UPLOAD_BYTES

ENDPOINTS = [
    {"method": "POST", "path": "/generate-template", "description": "Generate an XYT template from a WSQ file"},
    {"method": "POST", "path": "/match", "description": "Compare two WSQ fingerprints"},
    {"method": "GET", "path": "/health", "description": "API and NBIS tools status"},
]

# FailureKind -> (HTTP status, wire error code)
FAILURE_RESPONSES = {
    FailureKind.MISSING_INPUT: (400, "MISSING_FILE"),
    FailureKind.EXTRACTION_FAILED: (500, "EXTRACTION_FAILED"),
    FailureKind.NO_FEATURES: (400, "NO_MINUTIAE"),
    FailureKind.INSUFFICIENT_FEATURES: (400, "INSUFFICIENT_MINUTIAE"),
    FailureKind.INTERNAL_ERROR: (500, "INTERNAL_ERROR"),
}


def error_response(status_code: int, message: str, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "error": error},
    )


def failure_response(failure: PipelineFailure, error: Optional[str] = None) -> JSONResponse:
    status_code, default_error = FAILURE_RESPONSES[failure.kind]
    return error_response(status_code, failure.message, error or default_error)


def internal_error_response() -> JSONResponse:
    return failure_response(PipelineFailure(FailureKind.INTERNAL_ERROR, "Internal server error"))


def comparison_payload(result: ComparisonResult) -> Dict[str, Any]:
    return {
        "fingerprint1": {"id": result.first.id, "name": result.first.name, "minutiae": result.first.minutiae},
        "fingerprint2": {"id": result.second.id, "name": result.second.name, "minutiae": result.second.minutiae},
        "matchScore": result.score,
        "confidence": result.confidence,
        "isMatch": result.is_match,
        "threshold": result.threshold,
    }


def get_pipeline() -> FingerprintPipeline:
    if not fingerprint_pipeline:
        raise HTTPException(status_code=500, detail="Fingerprint pipeline not initialized")
    return fingerprint_pipeline


@app.on_event("startup")
async def startup_event():
    """Check the NBIS tools and prepare the templates directory"""
    global nbis_service, fingerprint_pipeline, templates_dir, max_upload_bytes

    templates_dir = os.getenv("TEMPLATES_DIR", "templates")
    max_upload_bytes = int(os.getenv("MAX_UPLOAD_BYTES", str(DEFAULT_MAX_UPLOAD_BYTES)))

    nbis_service = NBISService(NBISConfig.from_env())
    tools = await nbis_service.check_tools()
    if not tools.all_available:
        logger.error("NBIS tools not found!")
        logger.error(f"mindtct: {'found' if tools.mindtct else 'missing'} ({nbis_service.config.mindtct})")
        logger.error(f"bozorth3: {'found' if tools.bozorth3 else 'missing'} ({nbis_service.config.bozorth3})")
        raise RuntimeError("NBIS tools not available")

    fingerprint_pipeline = FingerprintPipeline(nbis_service)
    await ensure_templates_directory(templates_dir)
    logger.info(f"NBIS tools verified, templates directory: {templates_dir}")


@app.post("/generate-template")
async def generate_template(wsq: Optional[UploadFile] = File(None)):
    """Convert a WSQ file into an XYT minutiae template"""
    stored: Optional[UploadedFile] = None
    try:
        pipeline = get_pipeline()

        if wsq is None:
            return failure_response(PipelineFailure(FailureKind.MISSING_INPUT, "No WSQ file was uploaded"))

        try:
            stored = await store_upload(wsq, templates_dir, max_upload_bytes)
        except UploadRejected as rejected:
            return error_response(400, rejected.message, rejected.code)

        outcome = await pipeline.generate_template(stored)
        if isinstance(outcome, PipelineFailure):
            return failure_response(outcome)

        return {
            "success": True,
            "message": "XYT template generated successfully",
            "data": {
                "originalFile": stored.original_name,
                "xytFile": os.path.basename(outcome.template_path),
                "minutiaeCount": outcome.minutiae_count,
                "filePath": outcome.template_path,
                "fileId": stored.file_id,
            },
        }

    except HTTPException:
        raise
    except Exception as error:
        logger.error(f"Error in generate-template endpoint: {error}")
        if stored:
            await discard_artifacts(stored.path, stored.template_path)
        return internal_error_response()


@app.post("/match")
async def match_fingerprints(
    fingerprint1: Optional[UploadFile] = File(None),
    fingerprint2: Optional[UploadFile] = File(None),
):
    """Compare two WSQ fingerprints with bozorth3"""
    stored = []
    try:
        pipeline = get_pipeline()

        if fingerprint1 is None or fingerprint2 is None:
            return failure_response(
                PipelineFailure(FailureKind.MISSING_INPUT, "Two WSQ files are required for matching"),
                error="MISSING_FILES",
            )

        try:
            for upload in (fingerprint1, fingerprint2):
                stored.append(await store_upload(upload, templates_dir, max_upload_bytes))
        except UploadRejected as rejected:
            await discard_artifacts(*(item.path for item in stored))
            return error_response(400, rejected.message, rejected.code)

        outcome = await pipeline.compare(stored[0], stored[1])
        if isinstance(outcome, PipelineFailure):
            return failure_response(outcome)

        return {
            "success": True,
            "message": "Matching completed successfully",
            "data": comparison_payload(outcome),
        }

    except HTTPException:
        raise
    except Exception as error:
        logger.error(f"Error in match endpoint: {error}")
        paths = []
        for item in stored:
            paths.extend([item.path, item.template_path])
        await discard_artifacts(*paths)
        return internal_error_response()


@app.get("/health")
async def health_check():
    """API status and NBIS tools availability"""
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        if not nbis_service:
            raise HTTPException(status_code=500, detail="NBIS service not initialized")

        tools = await nbis_service.check_tools()
        healthy = tools.all_available
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "service": SERVICE_NAME,
                "version": SERVICE_VERSION,
                "status": "healthy" if healthy else "unhealthy",
                "timestamp": timestamp,
                "tools": tools.as_dict(),
                "endpoints": ENDPOINTS,
            },
        )

    except Exception as error:
        logger.error(f"Error in health endpoint: {error}")
        return JSONResponse(
            status_code=500,
            content={
                "service": SERVICE_NAME,
                "status": "error",
                "timestamp": timestamp,
                "error": "Failed to check NBIS tools",
            },
        )


@app.get("/")
async def get_info():
    """Basic API documentation"""
    return {
        "service": "Fingerprint Matching API Base",
        "description": "Base API for biometric implementations using NBIS",
        "version": SERVICE_VERSION,
        "documentation": {
            "endpoints": [
                "POST /generate-template - Generate an XYT template",
                "POST /match - Match two fingerprints",
                "GET /health - API status",
            ],
            "formats": ["WSQ"],
            "algorithms": ["NBIS mindtct", "NBIS bozorth3"],
        },
        "links": {"health": "/health", "documentation": "README.md"},
    }


if __name__ == "__main__":
    port = int(os.getenv("PORT", 3000))
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=port,
        log_level="info"
    )
