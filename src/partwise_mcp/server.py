"""Partwise MCP Server - Component alternatives, compatibility checks and personalized picks."""

import json
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Callable, Literal

from fastmcp import FastMCP
from mcp.types import ToolAnnotations
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route

from . import __version__
from .config import HTTP_PORT, RATE_LIMIT_EXEMPT_PATHS, RATE_LIMIT_MAX_TRACKED_IPS, RATE_LIMIT_REQUESTS
from .errors import ValidationError
from .service import RecommendationService, build_service

logger = logging.getLogger(__name__)

INSTRUCTIONS = (
    "Electronic component recommendations for a personal parts inventory. "
    "Use find_alternatives to get substitutes for a part, analyze_compatibility to check "
    "whether parts work together, and record_interaction to teach the server what a user "
    "picks, or learn_from_project once a build is finished. get_recommendations stays empty "
    "until a user has at least 5 recorded interactions."
)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding-window rate limit for the MCP endpoint.

    Paths in ``exempt_paths`` (``/health`` by default) are never counted.
    At most ``max_tracked_ips`` clients are tracked; when full after dropping
    idle ones, new clients are rejected instead of growing the table.
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        app,
        requests_per_minute: int = RATE_LIMIT_REQUESTS,
        exempt_paths: frozenset[str] = RATE_LIMIT_EXEMPT_PATHS,
        max_tracked_ips: int = RATE_LIMIT_MAX_TRACKED_IPS,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.exempt_paths = frozenset(exempt_paths)
        self.max_tracked_ips = max_tracked_ips
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = clock()

    def _get_client_ip(self, request) -> str:
        """Rightmost X-Forwarded-For entry (set by the last proxy), else the peer address."""
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            hops = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
            if hops:
                return hops[-1]
        return request.client.host if request.client else "unknown"

    def _sweep(self, now: float) -> None:
        cutoff = now - self.WINDOW_SECONDS
        for ip in [ip for ip, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[ip]
        self._last_sweep = now

    def _check_rate_limit(self, client_ip: str) -> bool:
        """True if this request should be rejected."""
        now = self._clock()
        if now - self._last_sweep > self.WINDOW_SECONDS:
            self._sweep(now)

        hits = self._hits.get(client_ip)
        if hits is None:
            if len(self._hits) >= self.max_tracked_ips:
                self._sweep(now)
                if len(self._hits) >= self.max_tracked_ips:
                    logger.warning(f"Rate limiter tracking {len(self._hits)} clients, rejecting {client_ip}")
                    return True
            hits = self._hits[client_ip] = deque()

        cutoff = now - self.WINDOW_SECONDS
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= self.requests_per_minute:
            return True
        hits.append(now)
        return False

    async def dispatch(self, request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        if self._check_rate_limit(self._get_client_ip(request)):
            retry_after = str(int(self.WINDOW_SECONDS))
            return JSONResponse(
                status_code=429,
                content={"error": "Rate limit exceeded", "retry_after": int(self.WINDOW_SECONDS)},
                headers={"Retry-After": retry_after},
            )
        return await call_next(request)


def _parse_list_param(value: list[str] | str | None) -> list[str] | None:
    """Parse a list parameter that may come as a JSON string from some MCP clients.

    Some clients serialize list parameters as '["a", "b"]' instead of arrays.
    A plain comma-separated string is accepted too.
    """
    if value is None:
        return None
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
            if isinstance(parsed, list):
                return parsed
        except json.JSONDecodeError:
            logger.debug(f"Failed to parse list parameter as JSON: {value[:100]!r}")
        items = [v.strip() for v in value.split(",") if v.strip()]
        return items or None
    return None


def _parse_object_list(value: list[dict] | str | None, name: str) -> list[dict] | None:
    """Like _parse_list_param, for lists of objects sent either as arrays or JSON strings."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            raise ValidationError(f"{name} must be a JSON array of objects") from None
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise ValidationError(f"{name} must be a list of objects")
    return value


def _context(
    budget: float | None,
    existing_components: list[str] | str | None,
    project_type: str | None = None,
) -> dict[str, Any] | None:
    existing = _parse_list_param(existing_components)
    if budget is None and not existing and not project_type:
        return None
    return {
        "budget": budget,
        "existing_components": existing or [],
        "project_type": project_type,
    }


def _read_only(title: str) -> ToolAnnotations:
    return ToolAnnotations(
        title=title,
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )


class PartwiseTools:
    """MCP tool handlers bound to one RecommendationService.

    Rejected input comes back as {"error": ...}; everything else is answered
    by the service's fallbacks.
    """

    def __init__(self, service: RecommendationService):
        self.service = service

    async def find_alternatives(
        self,
        component_id: str,
        budget: float | None = None,
        existing_components: list[str] | str | None = None,
    ) -> dict:
        """Find substitute components for a catalog part, best first.

        Candidates come from the same category and are scored on voltage,
        protocol, mounting and temperature compatibility, plus stock and price.

        Args:
            component_id: Catalog id of the part to replace
            budget: Optional max unit price for candidates
            existing_components: Other parts already in the project

        Returns:
            alternatives: up to 5 entries with compatibility_score (0-100),
            price_comparison, usability_impact, explanation, required_modifications
        """
        try:
            alternatives = await self.service.get_component_alternatives(
                component_id, _context(budget, existing_components)
            )
        except ValidationError as e:
            return {"error": e.message}
        return {"component_id": component_id, "alternatives": alternatives}

    async def find_alternatives_batch(
        self,
        component_ids: list[str] | str,
        budget: float | None = None,
    ) -> dict:
        """Find substitutes for several parts at once (max 50).

        One result per id, in the order given. A part that fails carries an
        "error" entry instead of aborting the whole batch.
        """
        ids = _parse_list_param(component_ids)
        if not ids:
            return {"error": "component_ids must be a non-empty list"}
        try:
            results = await self.service.get_component_alternatives_batch(ids, _context(budget, None))
        except ValidationError as e:
            return {"error": e.message}
        return {"results": results}

    async def analyze_compatibility(self, component_ids: list[str] | str) -> dict:
        """Check whether two or more catalog parts work together.

        Returns:
            overall_score (0-100), issues (dimension, severity, description,
            remedy), suggestions and required_modifications
        """
        ids = _parse_list_param(component_ids)
        if not ids:
            return {"error": "component_ids must be a list of at least 2 ids"}
        try:
            return await self.service.analyze_compatibility(ids)
        except ValidationError as e:
            return {"error": e.message}

    async def explain_compatibility(self, component_ids: list[str] | str) -> dict:
        """Compatibility analysis with a short prose explanation.

        The explanation is written by the configured AI service when one is
        available, otherwise generated from the analysis ("source" tells which).
        """
        ids = _parse_list_param(component_ids)
        if not ids:
            return {"error": "component_ids must be a list of at least 2 ids"}
        try:
            return await self.service.explain_compatibility(ids)
        except ValidationError as e:
            return {"error": e.message}

    async def record_interaction(
        self,
        user_id: str,
        type: Literal[
            "component_selected",
            "component_substituted",
            "project_completed",
            "project_failed",
            "component_purchased",
            "component_rated",
        ],
        component_id: str | None = None,
        project_id: str | None = None,
        success: bool | None = None,
        rating: float | None = None,
        original_choice: str | None = None,
        alternative_choice: str | None = None,
    ) -> dict:
        """Record what a user did so future recommendations can adapt.

        Args:
            user_id: Stable user identifier
            type: Interaction type
            component_id: Required for component_* interactions
            project_id: Project the interaction belongs to
            success: Outcome, if known
            rating: 1-5, required for component_rated
            original_choice: For substitutions, the part that was replaced
            alternative_choice: For substitutions, the part chosen instead
        """
        payload = {
            "user_id": user_id,
            "type": type,
            "component_id": component_id,
            "project_id": project_id,
            "metadata": {
                "success": success,
                "rating": rating,
                "original_choice": original_choice,
                "alternative_choice": alternative_choice,
            },
        }
        try:
            return await self.service.record_interaction(payload)
        except ValidationError as e:
            return {"error": e.message}

    async def learn_from_project(
        self,
        user_id: str,
        project_id: str,
        outcome: Literal["success", "failure", "partial"],
        components_used: list[dict] | str,
        modifications: list[dict] | str | None = None,
    ) -> dict:
        """Teach the server from a finished project in one call.

        Args:
            user_id: Stable user identifier
            project_id: The finished project
            outcome: success, failure or partial
            components_used: [{"component_id", "quantity_used", "performance_rating" (1-5),
                "substituted_with"}], only component_id is required
            modifications: [{"type", "original_plan", "actual_implementation", "impact", "reason"}];
                a component_substitution names the new part in actual_implementation

        Returns:
            interactions_recorded, interactions_failed, patterns_updated
        """
        try:
            used = _parse_object_list(components_used, "components_used")
            mods = _parse_object_list(modifications, "modifications")
            return await self.service.learn_from_project_completion(
                user_id, project_id, outcome, used, mods
            )
        except ValidationError as e:
            return {"error": e.message}

    async def get_preference_strength(
        self,
        user_id: str,
        pattern_type: Literal["brand", "category", "success"],
        subject: str,
    ) -> dict:
        """How strongly a user leans toward one brand, category or component.

        strength is 0-1 (0.5 neutral); confidence fades when the preference
        has not been reinforced recently.
        """
        try:
            result = await self.service.get_preference_strength(user_id, pattern_type, subject)
        except ValidationError as e:
            return {"error": e.message}
        return {"user_id": user_id, "pattern_type": pattern_type, "subject": subject, **result}

    async def get_recommendations(
        self,
        user_id: str,
        budget: float | None = None,
        existing_components: list[str] | str | None = None,
        project_type: str | None = None,
    ) -> dict:
        """Personalized component recommendations learned from a user's history.

        Empty until the user has at least 5 recorded interactions.
        """
        try:
            recommendations = await self.service.get_personalized_recommendations(
                user_id, _context(budget, existing_components, project_type)
            )
        except ValidationError as e:
            return {"error": e.message}
        return {"user_id": user_id, "recommendations": recommendations}

    async def get_user_profile(self, user_id: str) -> dict:
        """Learned preference profile: preferred brands and categories, budget range, skill level."""
        try:
            profile = await self.service.get_user_profile(user_id)
        except ValidationError as e:
            return {"error": e.message}
        if profile is None:
            return {"user_id": user_id, "profile": None, "hint": "Not enough interactions recorded yet"}
        return {"user_id": user_id, "profile": profile}

    async def get_learning_stats(self, user_id: str) -> dict:
        """Interaction and pattern counts for a user."""
        try:
            return await self.service.get_learning_stats(user_id)
        except ValidationError as e:
            return {"error": e.message}


def build_mcp(service: RecommendationService, db=None) -> FastMCP:
    """Create the MCP server with every tool bound to ``service``."""

    @asynccontextmanager
    async def lifespan(app):
        logger.info(f"Partwise MCP {__version__} ready")
        yield
        await service.close()
        if db is not None:
            db.close()

    mcp = FastMCP(name="partwise", instructions=INSTRUCTIONS, lifespan=lifespan)
    tools = PartwiseTools(service)

    mcp.tool(tools.find_alternatives, annotations=_read_only("Find Alternatives"))
    mcp.tool(tools.find_alternatives_batch, annotations=_read_only("Find Alternatives (Batch)"))
    mcp.tool(tools.analyze_compatibility, annotations=_read_only("Analyze Compatibility"))
    mcp.tool(
        tools.explain_compatibility,
        annotations=ToolAnnotations(
            title="Explain Compatibility",
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=False,
            openWorldHint=True,
        ),
    )
    mcp.tool(
        tools.record_interaction,
        annotations=ToolAnnotations(
            title="Record Interaction",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=False,
            openWorldHint=False,
        ),
    )
    mcp.tool(
        tools.learn_from_project,
        annotations=ToolAnnotations(
            title="Learn From Project",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=False,
            openWorldHint=False,
        ),
    )
    mcp.tool(tools.get_preference_strength, annotations=_read_only("Preference Strength"))
    mcp.tool(tools.get_recommendations, annotations=_read_only("Personalized Recommendations"))
    mcp.tool(tools.get_user_profile, annotations=_read_only("User Preference Profile"))
    mcp.tool(tools.get_learning_stats, annotations=_read_only("Learning Stats"))
    return mcp


def create_app(service: RecommendationService | None = None):
    """Create the ASGI application."""
    db = None
    if service is None:
        service, db = build_service()
    mcp = build_mcp(service, db)

    async def health(request):
        report = service.health()
        return JSONResponse(
            {
                "status": "healthy" if report["healthy"] else "degraded",
                "service": "partwise-mcp",
                "version": __version__,
                "issues": report["issues"],
                "errors_last_hour": report["error_stats"]["errors_last_hour"],
            },
            status_code=200 if report["healthy"] else 503,
        )

    middleware = [
        Middleware(RateLimitMiddleware, requests_per_minute=RATE_LIMIT_REQUESTS),
    ]

    # stateless_http=True: some MCP clients don't forward session cookies
    app = mcp.http_app(
        path="/mcp",
        middleware=middleware,
        transport="streamable-http",
        stateless_http=True,
    )
    app.routes.append(Route("/health", health))
    return app


class _HealthFilterLog(logging.Filter):
    """Suppress noisy /health access logs from liveness checks."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return "/health" not in msg


def main():
    """Run the server."""
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("uvicorn.access").addFilter(_HealthFilterLog())

    uvicorn.run(
        "partwise_mcp.server:create_app",
        factory=True,
        host="0.0.0.0",
        port=HTTP_PORT,
        lifespan="on",
    )


if __name__ == "__main__":
    main()
