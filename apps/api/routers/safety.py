"""
Safety Scan API Router

user_input runs crisis detection (exclusions apply); ai_response and nudge
run the stricter generated-text scan.
"""

from fastapi import APIRouter

from schemas import CrisisResourceResponse, SafetyScanRequest, SafetyScanResponse
from services.safety_scanner import (
    OutputSource,
    generate_crisis_response,
    get_safe_fallback_response,
    get_severity_description,
    requires_immediate_intervention,
    scan_ai_output,
    scan_user_input,
    should_suppress_output,
)

router = APIRouter(prefix="/v1/safety", tags=["Safety"])


@router.post("/scan", response_model=SafetyScanResponse)
def scan_text(request: SafetyScanRequest):
    if request.source == "user_input":
        result = scan_user_input(request.text)
        intervention = requires_immediate_intervention(result)
        return SafetyScanResponse(
            source=request.source,
            safe=not result.detected,
            severity=result.severity.value if result.severity else None,
            severity_description=get_severity_description(result.severity),
            matched_keywords=result.matched_keywords,
            resources=[CrisisResourceResponse(**r.as_dict()) for r in result.resources],
            requires_intervention=intervention,
            response_text=generate_crisis_response(result) if result.detected else None,
            rules_version=result.rules_version,
        )

    result = scan_ai_output(request.text, OutputSource(request.source))
    suppress = should_suppress_output(result)
    return SafetyScanResponse(
        source=request.source,
        safe=result.safe,
        severity=result.severity.value if result.severity else None,
        severity_description=get_severity_description(result.severity),
        matched_keywords=result.flagged_keywords,
        requires_intervention=suppress,
        response_text=get_safe_fallback_response(result.source) if suppress else None,
        rules_version=result.rules_version,
    )
