"""
Recipe search and nutrition analysis client.

Wraps the nutrition provider's REST API. Every billable request goes through
the CallGuard, and identical searches are served from cache.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from ..config.loader import NutritionSettings
from ..core.cache import fingerprint
from ..core.errors import ExternalAPIError
from ..core.guard import CallGuard
from ..core.pricing import operation_cost

logger = logging.getLogger(__name__)

RECIPES_PATH = "/api/recipes/v2"
NUTRITION_PATH = "/api/nutrition-details"


@dataclass(frozen=True)
class HealthcareFlags:
    diabetes_friendly: bool
    heart_healthy: bool
    low_calorie: bool


@dataclass(frozen=True)
class Recipe:
    id: str
    title: str
    image: Optional[str]
    calories: int
    health_labels: Tuple[str, ...]
    healthcare_flags: HealthcareFlags


@dataclass(frozen=True)
class RecipeSearchResult:
    recipes: Tuple[Recipe, ...]
    total_found: int


@dataclass(frozen=True)
class NutritionAnalysis:
    """Nutrition facts plus allergen alerts derived from the caller's health context."""
    calories: float
    total_weight: float
    total_nutrients: Dict[str, Any]
    health_labels: Tuple[str, ...]
    cautions: Tuple[str, ...]
    allergen_alerts: Tuple[str, ...] = field(default_factory=tuple)


def _to_recipe(raw: Mapping[str, Any]) -> Recipe:
    labels = tuple(raw.get("healthLabels") or ())
    calories = float(raw.get("calories") or 0)
    uri = raw.get("uri") or ""
    return Recipe(
        id=uri.split("#recipe_")[-1] if "#recipe_" in uri else uri,
        title=raw.get("label", ""),
        image=raw.get("image"),
        calories=round(calories),
        health_labels=labels,
        healthcare_flags=HealthcareFlags(
            diabetes_friendly="Low-Sugar" in labels or "Diabetic" in labels,
            heart_healthy="Low-Sodium" in labels or "Low-Fat" in labels,
            low_calorie=calories < 400
        )
    )


def _ingredient_line(item: Union[str, Mapping[str, Any]]) -> str:
    if isinstance(item, str):
        return item.strip()
    return f"{item.get('quantity', '')} {item.get('unit', '')} {item.get('food', '')}".strip()


class NutritionClient:
    """Client for the recipe/nutrition provider."""

    service = "nutrition"

    def __init__(
        self,
        settings: NutritionSettings,
        guard: CallGuard,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        cache_ttl: Optional[int] = None
    ):
        self.settings = settings
        self.guard = guard
        self.cache_ttl = cache_ttl
        self._http = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Edamam-Account-User": settings.account_user}
        )

    def is_configured(self) -> bool:
        return self.settings.configured

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ExternalAPIError("Nutrition API not configured", self.service)

    def _auth_params(self) -> List[Tuple[str, str]]:
        return [("app_id", self.settings.app_id or ""), ("app_key", self.settings.app_key or "")]

    async def search_recipes(
        self,
        user_id: str,
        query: str,
        health_labels: Sequence[str] = (),
        calories: Optional[Tuple[Optional[int], Optional[int]]] = None,
        from_: int = 0,
        to: int = 20,
        tenant_id: str = "default",
        timeout: Optional[float] = None
    ) -> RecipeSearchResult:
        """Search recipes, sharing one upstream call between identical requests.

        Args:
            user_id: User the search is billed to
            query: Free-text query
            health_labels: Provider health filters (e.g. "low-sodium")
            calories: Optional (min, max) calorie range
            from_: First result index
            to: Last result index (exclusive)
            tenant_id: Tenant owning the usage record
            timeout: Optional per-call timeout in seconds

        Returns:
            RecipeSearchResult

        Raises:
            QuotaExceededError: If the user's nutrition budget is spent
            RateLimitError: If the per-minute ceiling is reached
            ExternalAPIError: If the provider fails or is not configured
        """
        self._require_configured()
        if not query or not query.strip():
            raise ValueError("query is required and cannot be empty")

        params: List[Tuple[str, Any]] = [
            ("type", "public"),
            ("q", query),
            ("from", from_),
            ("to", to),
        ]
        params.extend(("health", label) for label in health_labels)
        if calories is not None:
            low, high = calories
            if low is not None and high is not None:
                params.append(("calories", f"{low}-{high}"))
            elif low is not None:
                params.append(("calories", f"{low}+"))
            elif high is not None:
                params.append(("calories", str(high)))

        key = fingerprint("nutrition.search_recipes", {
            "query": query,
            "health": sorted(label.lower() for label in health_labels),
            "calories": list(calories) if calories else None,
            "from": from_,
            "to": to,
        })

        async def call() -> RecipeSearchResult:
            response = await self._http.get(RECIPES_PATH, params=params + self._auth_params())
            response.raise_for_status()
            data = response.json()
            recipes = tuple(_to_recipe(hit.get("recipe", {})) for hit in data.get("hits") or ())
            return RecipeSearchResult(recipes=recipes, total_found=data.get("count", len(recipes)))

        return await self.guard.execute(
            self.service, "search_recipes", call,
            user_id=user_id,
            cost=operation_cost(self.service, "search_recipes"),
            tenant_id=tenant_id,
            cache_key=key,
            ttl=self.cache_ttl,
            timeout=timeout
        )

    async def analyze_nutrition(
        self,
        user_id: str,
        ingredients: Iterable[Union[str, Mapping[str, Any]]],
        allergies: Sequence[str] = (),
        tenant_id: str = "default",
        timeout: Optional[float] = None
    ) -> NutritionAnalysis:
        """Analyze an ingredient list.

        The provider's response is cached by ingredient list. Allergen alerts
        come from the caller's allergies, which are PHI, so they are computed
        per call and never cached.
        """
        self._require_configured()
        lines = [_ingredient_line(item) for item in ingredients]
        lines = [line for line in lines if line]
        if not lines:
            raise ValueError("ingredients is required and cannot be empty")

        key = fingerprint("nutrition.analyze_nutrition", {"ingr": lines})

        async def call() -> Dict[str, Any]:
            response = await self._http.post(
                NUTRITION_PATH,
                params=self._auth_params(),
                json={"ingr": lines}
            )
            response.raise_for_status()
            return response.json()

        data = await self.guard.execute(
            self.service, "analyze_nutrition", call,
            user_id=user_id,
            cost=operation_cost(self.service, "analyze_nutrition"),
            tenant_id=tenant_id,
            cache_key=key,
            ttl=self.cache_ttl,
            timeout=timeout
        )

        cautions = tuple(data.get("cautions") or ())
        searchable = " ".join(cautions + tuple(lines)).lower()
        alerts = tuple(a for a in allergies if a and a.lower() in searchable)
        if alerts:
            logger.info("Allergen alerts raised for nutrition analysis (user %s)", user_id)
        return NutritionAnalysis(
            calories=float(data.get("calories") or 0),
            total_weight=float(data.get("totalWeight") or 0),
            total_nutrients=dict(data.get("totalNutrients") or {}),
            health_labels=tuple(data.get("healthLabels") or ()),
            cautions=cautions,
            allergen_alerts=alerts
        )

    async def health_check(self) -> bool:
        """Probe the provider with a minimal search. Not billed to any user."""
        if not self.is_configured():
            return False
        response = await self._http.get(
            RECIPES_PATH,
            params=[("type", "public"), ("q", "apple"), ("to", 1)] + self._auth_params()
        )
        return response.status_code == 200

    async def aclose(self) -> None:
        await self._http.aclose()
