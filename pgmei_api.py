#!/usr/bin/env python3
"""
HTTP job layer for PGMEI debit extraction.
Runs pgmei_agent.py as a subprocess per request and caches the persisted aggregate.
"""
import asyncio
import json
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError, field_validator

from debit_models import MIN_IDENTIFIER_DIGITS, normalize_identifier
from debit_store import COMBINED_FILENAME
from scrape_cache import ScrapeCache, make_key

load_dotenv()

# Configuration
PROJECT_DIR = Path(__file__).resolve().parent
ARTIFACTS_DIR = Path(os.getenv("ARTIFACTS_DIR", str(PROJECT_DIR / "artifacts")))
SCRAPE_TIMEOUT_SECONDS = float(os.getenv("SCRAPE_TIMEOUT_SECONDS", "180"))
KILL_GRACE_SECONDS = 5.0
DRAIN_SECONDS = 2.0
# filesystem mtimes can be coarser than time.time()
MTIME_SLACK_SECONDS = 1.0

# Setup logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("pgmei_api")


class ScrapeRequest(BaseModel):
    cnpj: str = Field("", description="CNPJ, with or without punctuation (at least 11 digits)")
    year: Optional[str] = Field(None, description="Requested year (used when the portal lists no years)")
    month: Optional[str] = Field(None, description="Requested month, recorded with the result")
    noHeadless: bool = Field(False, description="Show the browser window (debugging only)")
    engine: Optional[Literal["launch", "cdp"]] = Field(None, description="Launch Chromium or attach over CDP")
    strategy: Optional[Literal["sequential", "parallel"]] = Field(None, description="Year iteration strategy")

    @field_validator("year", "month", mode="before")
    @classmethod
    def _as_text(cls, v):
        if v is None or v == "":
            return None
        return str(v)


class ScrapeResponse(BaseModel):
    success: bool = Field(..., description="Whether an aggregate is included")
    cached: bool = Field(False, description="Served from the result cache")
    code: Optional[int] = Field(None, description="Exit code of the extraction process")
    timedOut: Optional[bool] = Field(None, description="The process was stopped by the wall-clock timeout")
    stdout: Optional[str] = Field(None, description="Captured standard output")
    stderr: Optional[str] = Field(None, description="Captured standard error")
    result: Optional[Dict[str, Any]] = Field(None, description="Contents of debitos_all.json")
    message: Optional[str] = Field(None, description="Why no result is included")
    error: Optional[str] = Field(None, description="Error summary when the output could not be read")
    detail: Optional[str] = Field(None, description="Error detail")


@dataclass
class RunOutcome:
    code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool
    output_path: Path
    started_at: float

    @property
    def fresh_output(self) -> bool:
        """True only for a combined file written after this run started."""
        try:
            return self.output_path.stat().st_mtime >= self.started_at - MTIME_SLACK_SECONDS
        except OSError:
            return False


class EngineRunner:
    """Spawns ``python -m pgmei_agent`` with a hard wall-clock timeout."""

    def __init__(
        self,
        artifacts_dir: Path = ARTIFACTS_DIR,
        timeout_seconds: float = SCRAPE_TIMEOUT_SECONDS,
        python: str = sys.executable,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
    ):
        self.artifacts_dir = Path(artifacts_dir)
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.python = python

    def output_dir_for(self, digits: str) -> Path:
        return self.artifacts_dir / digits

    def build_command(self, req: ScrapeRequest, digits: str, output_dir: Path) -> List[str]:
        cmd = [self.python, "-m", "pgmei_agent", f"--cnpj={digits}", f"--output-dir={output_dir}"]
        if req.year:
            cmd.append(f"--year={req.year}")
        if req.month:
            cmd.append(f"--month={req.month}")
        if req.noHeadless:
            cmd.append("--no-headless")
        if req.engine:
            cmd.append(f"--engine={req.engine}")
        if req.strategy:
            cmd.append(f"--strategy={req.strategy}")
        return cmd

    async def run(self, req: ScrapeRequest, digits: str) -> RunOutcome:
        output_dir = self.output_dir_for(digits)
        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(req, digits, output_dir)
        started_at = time.time()
        logger.info(f"🚀 Spawning extraction: {' '.join(cmd)}")

        # own process group, so the browser and its driver go down with the engine
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(PROJECT_DIR),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        readers = [
            asyncio.ensure_future(_collect(proc.stdout, stdout_chunks)),
            asyncio.ensure_future(_collect(proc.stderr, stderr_chunks)),
        ]
        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"⏰ Extraction for {digits} exceeded {self.timeout_seconds}s; terminating")
            await self._stop(proc)

        # a leftover grandchild may still hold the pipes open
        _, pending = await asyncio.wait(readers, timeout=DRAIN_SECONDS)
        for task in pending:
            task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)

        logger.info(f"Extraction for {digits} exited with code {proc.returncode} in {time.time() - started_at:.2f}s")
        return RunOutcome(
            code=proc.returncode,
            stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
            timed_out=timed_out,
            output_path=output_dir / COMBINED_FILENAME,
            started_at=started_at,
        )

    async def _stop(self, proc) -> None:
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Extraction ignored SIGTERM; killing it")
            _signal_group(proc, signal.SIGKILL)
            await proc.wait()
        # anything in the group that outlived the engine
        _signal_group(proc, signal.SIGKILL)


async def _collect(stream, chunks: List[bytes]) -> None:
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        chunks.append(chunk)


def _signal_group(proc, sig) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def get_cache(request: Request) -> ScrapeCache:
    return request.app.state.cache


def get_runner(request: Request) -> EngineRunner:
    return request.app.state.runner


async def dispatch(req: ScrapeRequest, cache: ScrapeCache, runner: EngineRunner) -> ScrapeResponse:
    digits = normalize_identifier(req.cnpj)
    if len(digits) < MIN_IDENTIFIER_DIGITS:
        raise HTTPException(status_code=400, detail=f"cnpj must have at least {MIN_IDENTIFIER_DIGITS} digits")

    logger.info(f"🎯 Scrape request received - CNPJ: {digits}, year: {req.year}, month: {req.month}")
    key = make_key(digits, req.year, req.month)
    cached = cache.get(key)
    if cached is not None:
        logger.info(f"✅ Cache hit for {key}")
        return ScrapeResponse(success=True, cached=True, result=cached)

    try:
        outcome = await runner.run(req, digits)
    except OSError as e:
        logger.error(f"❌ Could not start the extraction process: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start extraction: {e}")

    response = ScrapeResponse(
        success=False,
        code=outcome.code,
        timedOut=outcome.timed_out,
        stdout=outcome.stdout,
        stderr=outcome.stderr,
    )
    if not outcome.fresh_output:
        response.message = "timeout or no output" if outcome.timed_out else "extraction produced no output file"
        logger.error(f"❌ {response.message} for {digits}")
        return response

    try:
        with open(outcome.output_path, "r", encoding="utf-8") as f:
            result = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"❌ Failed to read {outcome.output_path}: {e}")
        response.error = "failed to read output"
        response.detail = str(e)
        return response

    cache.set(key, result)
    response.success = True
    response.result = result
    logger.info(f"✅ Extraction for {digits} completed")
    return response


router = APIRouter()


@router.get("/")
async def root():
    """API root endpoint with documentation"""
    return {
        "service": "PGMEI Debit Extractor",
        "version": "1.0.0",
        "endpoints": {
            "health": "/health",
            "status": "/status",
            "scrape": "/scrape",
        },
        "usage": {
            "method": "POST",
            "endpoint": "/scrape",
            "body": {"cnpj": "00.000.000/0001-91", "year": "2024", "month": "1"},
        },
    }


@router.get("/status")
async def status():
    return {"ok": True}


@router.get("/health")
async def health(request: Request):
    """Health check endpoint"""
    runner: EngineRunner = request.app.state.runner
    return {
        "status": "healthy",
        "artifacts_dir": str(runner.artifacts_dir),
        "artifacts_exists": runner.artifacts_dir.exists(),
        "cache_entries": len(request.app.state.cache),
    }


@router.post("/scrape", response_model=ScrapeResponse, response_model_exclude_none=True)
async def scrape(
    req: ScrapeRequest,
    cache: ScrapeCache = Depends(get_cache),
    runner: EngineRunner = Depends(get_runner),
):
    return await dispatch(req, cache, runner)


@router.get("/scrape", response_model=ScrapeResponse, response_model_exclude_none=True)
async def scrape_query(
    cnpj: str = "",
    year: Optional[str] = None,
    month: Optional[str] = None,
    noHeadless: bool = False,
    engine: Optional[str] = None,
    strategy: Optional[str] = None,
    cache: ScrapeCache = Depends(get_cache),
    runner: EngineRunner = Depends(get_runner),
):
    try:
        req = ScrapeRequest(cnpj=cnpj, year=year, month=month, noHeadless=noHeadless, engine=engine, strategy=strategy)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    return await dispatch(req, cache, runner)


def create_app(cache: Optional[ScrapeCache] = None, runner: Optional[EngineRunner] = None) -> FastAPI:
    app = FastAPI(
        title="PGMEI Debit Extractor API",
        version="1.0.0",
        description="Runs PGMEI debit extractions on demand and caches their results",
    )
    app.state.cache = cache if cache is not None else ScrapeCache()
    app.state.runner = runner if runner is not None else EngineRunner()
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "3000"))
    logger.info(f"🚀 Starting PGMEI API on port {port}")
    logger.info(f"🗂️ Artifacts directory: {app.state.runner.artifacts_dir}")
    uvicorn.run("pgmei_api:app", host="0.0.0.0", port=port)
