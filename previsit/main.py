"""
HTTP surface for the previsit pipeline.

Both stage functions are served by one app:
  POST /functions/process_patient_files     (file stage)
  POST /functions/generate_clinical_summary (summary stage)
  GET  /health
Use: uvicorn previsit.main:app --host 0.0.0.0 --port 8080
"""
import json
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from previsit.worker.config import load_worker_config
from previsit.worker.main import handle_file_trigger, handle_summary_trigger

_cfg = load_worker_config()
logging.basicConfig(level=getattr(logging, _cfg.log_level, logging.INFO), format=_cfg.log_format)
logger = logging.getLogger(__name__)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("uvicorn").setLevel(logging.INFO)

app = FastAPI(title="Previsit Pipeline", version="0.1.0")


def _json_error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


async def _read_body(request: Request) -> tuple[Any, JSONResponse | None]:
    raw = await request.body()
    text = raw.decode("utf-8", errors="replace")
    if not text.strip():
        logger.warning("Empty request body received")
        return None, _json_error(400, "Empty request body")
    try:
        return json.loads(text), None
    except json.JSONDecodeError as e:
        logger.error("Failed to parse request body: %s", e)
        return None, _json_error(400, "Invalid JSON in request body", parse_error=str(e))


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "previsit-pipeline"}


@app.post("/functions/process_patient_files")
async def process_patient_files(request: Request):
    body, error = await _read_body(request)
    if error is not None:
        return error
    response = await handle_file_trigger(body, cfg=_cfg)
    return JSONResponse(status_code=response.status_code, content=response.body)


@app.post("/functions/generate_clinical_summary")
async def generate_clinical_summary(request: Request):
    body, error = await _read_body(request)
    if error is not None:
        return error
    response = await handle_summary_trigger(body, cfg=_cfg)
    return JSONResponse(status_code=response.status_code, content=response.body)
