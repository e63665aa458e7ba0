"""AssignSavvy Tool Routes

Endpoints:
- POST /api/writer/generate
- POST /api/research/query
- POST /api/detector/detect
- POST /api/detector/improve
- POST /api/detector/workflow
- POST /api/prompt-engineer/optimize
- POST /api/prompt-engineer/analyze
- GET  /api/prompt-engineer/templates

Validation failures surface through the RequestRejected handler in server.py.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
import logging

from assignsavvy.models.credits import QualityTier
from assignsavvy.models.tools import ToolErrorCode, ToolRunResult, DetectorWorkflowResult
from assignsavvy.models.user import UserAccount
from assignsavvy.routes.deps import get_services, get_current_account
from assignsavvy.services.container import CreditServices
from assignsavvy.services.orchestrators import PROMPT_TEMPLATES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Tools"])


class WriterRequest(BaseModel):
    topic: str
    instructions: str = ""
    word_count: int = 500
    style: Optional[str] = None
    quality: QualityTier = QualityTier.STANDARD


class ResearchRequest(BaseModel):
    query: str
    depth: int = 1
    research_type: str = "general"
    quality: QualityTier = QualityTier.STANDARD


class DetectRequest(BaseModel):
    text: str


class ImproveRequest(BaseModel):
    text: str
    issues: List[Dict[str, Any]] = Field(default_factory=list)
    quality: QualityTier = QualityTier.STANDARD


class WorkflowRequest(BaseModel):
    text: str
    quality: QualityTier = QualityTier.STANDARD


class PromptRequest(BaseModel):
    prompt: str
    category: str = "general"


def _respond(result: ToolRunResult):
    """200 on success; 402 when credits ran out after validation; 502 on provider failure."""
    if result.success:
        return result
    if result.error_code == ToolErrorCode.INSUFFICIENT_CREDITS:
        return JSONResponse(status_code=402, content={
            "detail": result.message,
            "error_code": result.error_code.value,
            "required_credits": result.required_credits,
            "available_credits": result.available_credits,
        })
    return JSONResponse(status_code=502, content={
        "detail": result.message,
        "error_code": ToolErrorCode.GENERATION_FAILED.value,
        "remaining_credits": result.remaining_credits,
    })


@router.post("/writer/generate")
async def writer_generate(
    data: WriterRequest,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    result = await services.writer.generate(
        account.user_id,
        data.topic,
        instructions=data.instructions,
        word_count=data.word_count,
        style=data.style,
        quality=data.quality,
    )
    return _respond(result)


@router.post("/research/query")
async def research_query(
    data: ResearchRequest,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    result = await services.research.query(
        account.user_id,
        data.query,
        depth=data.depth,
        research_type=data.research_type,
        quality=data.quality,
    )
    return _respond(result)


@router.post("/detector/detect")
async def detector_detect(
    data: DetectRequest,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    return _respond(await services.detector.detect(account.user_id, data.text))


@router.post("/detector/improve")
async def detector_improve(
    data: ImproveRequest,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    result = await services.detector.improve(
        account.user_id, data.text, issues=data.issues, quality=data.quality
    )
    return _respond(result)


@router.post("/detector/workflow")
async def detector_workflow(
    data: WorkflowRequest,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    """Detect, rewrite and re-scan. Fails like /detect only when the first scan fails."""
    workflow: DetectorWorkflowResult = await services.detector.workflow(
        account.user_id, data.text, quality=data.quality
    )
    if not workflow.detection.success:
        return _respond(workflow.detection)
    return workflow


@router.post("/prompt-engineer/optimize")
async def prompt_optimize(
    data: PromptRequest,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    return _respond(await services.prompt_optimizer.optimize(account.user_id, data.prompt, data.category))


@router.post("/prompt-engineer/analyze")
async def prompt_analyze(
    data: PromptRequest,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    return _respond(await services.prompt_optimizer.analyze(account.user_id, data.prompt))


@router.get("/prompt-engineer/templates")
async def prompt_templates():
    return {"templates": PROMPT_TEMPLATES}
