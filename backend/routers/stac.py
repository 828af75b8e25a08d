"""
STAC API Router
Scenario matching, analysis and knowledge base management endpoints
"""
from fastapi import APIRouter, Depends, HTTPException
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from services.stac_service import STACService, get_stac_service

router = APIRouter(prefix="/api/stac", tags=["STAC"])


# ==================== Pydantic Models ====================

class MatchRequest(BaseModel):
    content: str
    bypass_cache: bool = False
    timeout_ms: Optional[int] = Field(default=None, gt=0, le=120000)


class MatchResponse(BaseModel):
    matches: List[dict]
    count: int
    fallback_mode: bool


class ReloadRequest(BaseModel):
    source: Optional[str] = None  # URL or file path; defaults to the configured knowledge base
    content: Optional[str] = None  # inline knowledge base JSON, takes precedence over source


class ReloadResponse(BaseModel):
    loaded: bool
    fallback_mode: bool
    scenarios: int
    error: Optional[str] = None


class ScenarioListResponse(BaseModel):
    scenarios: List[str]
    count: int
    fallback_mode: bool


# ==================== Matching ====================

@router.post("/match", response_model=MatchResponse)
async def match_scenarios(request: MatchRequest, service: STACService = Depends(get_stac_service)):
    """Rank knowledge base scenarios for a document's text"""
    matches = await service.match_scenarios(
        request.content, bypass_cache=request.bypass_cache, timeout_ms=request.timeout_ms
    )
    return MatchResponse(
        matches=[match.to_dict() for match in matches],
        count=len(matches),
        fallback_mode=service.is_fallback_mode(),
    )


@router.post("/analyze")
async def analyze_content(request: MatchRequest, service: STACService = Depends(get_stac_service)) -> Dict[str, Any]:
    """Match scenarios and derive requirements, test cases, threats and recommendations"""
    matches = await service.match_scenarios(
        request.content, bypass_cache=request.bypass_cache, timeout_ms=request.timeout_ms
    )
    if not matches:
        return service.get_empty_analysis_results()
    return service.format_analysis_results(matches)


# ==================== Knowledge Base ====================

@router.post("/reload", response_model=ReloadResponse)
async def reload_knowledge_base(request: ReloadRequest, service: STACService = Depends(get_stac_service)):
    if request.content is not None:
        loaded = service.load_knowledge_base_from_text(request.content)
    else:
        loaded = await service.load_knowledge_base(request.source)

    last_error = service.loader.last_error
    return ReloadResponse(
        loaded=loaded,
        fallback_mode=service.is_fallback_mode(),
        scenarios=len(service.get_available_scenarios()),
        error=str(last_error) if last_error else None,
    )


@router.get("/scenarios", response_model=ScenarioListResponse)
async def list_scenarios(service: STACService = Depends(get_stac_service)):
    scenarios = service.get_available_scenarios()
    return ScenarioListResponse(scenarios=scenarios, count=len(scenarios), fallback_mode=service.is_fallback_mode())


@router.get("/scenarios/{name}")
async def get_scenario(name: str, service: STACService = Depends(get_stac_service)):
    record = service.get_scenario_data(name)
    if record is None:
        raise HTTPException(status_code=404, detail="Scenario not found")
    return {"name": name, **record.to_dict()}


@router.get("/statistics")
async def get_statistics(service: STACService = Depends(get_stac_service)):
    return service.get_statistics()


# ==================== Diagnostics ====================

@router.get("/metrics")
async def get_performance_metrics(service: STACService = Depends(get_stac_service)):
    return service.get_performance_metrics()


@router.get("/logs")
async def get_service_logs(service: STACService = Depends(get_stac_service)):
    logs = service.get_service_logs()
    return {"logs": logs, "count": len(logs)}


@router.delete("/logs")
async def clear_service_logs(service: STACService = Depends(get_stac_service)):
    service.clear_service_logs()
    return {"message": "Service logs cleared"}
