"""
Generative AI client over an OpenAI-compatible chat completions API.

Builds clinically safe prompts, prices every completion from its token usage,
and reviews replies for content that needs a human look.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openai import AsyncOpenAI

from ..config.loader import AISettings
from ..core.errors import ExternalAPIError
from ..core.guard import CallGuard
from ..core.pricing import PRICING_TABLE, calculate_cost
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

HEALTHCARE_DISCLAIMER = (
    "This information is for educational purposes only and should not replace "
    "professional medical advice. Always consult with your healthcare provider before "
    "making significant dietary changes, especially if you have health conditions or "
    "take medications."
)

SYSTEM_PROMPT = """You are a healthcare nutrition assistant. Your role is to provide evidence-based nutritional guidance while being mindful of patient safety.

CRITICAL GUIDELINES:
- NEVER provide medical advice, diagnoses, or treatment recommendations
- NEVER suggest stopping, starting, or changing medications
- ALWAYS include appropriate disclaimers about consulting healthcare providers
- Focus on nutritional education and general wellness information
- Be mindful of food-drug interactions when health conditions are mentioned"""

MEDICAL_ADVICE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"take this medication",
        r"stop taking",
        r"start taking",
        r"\bcure\b",
        r"treat your",
        r"\bdiagnos",
        r"medical treatment",
    )
]

NUTRITION_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"nutrients", r"vitamins", r"minerals", r"calories", r"protein",
        r"carbohydrates", r"healthy eating", r"balanced diet",
    )
]

DISCLAIMER_PATTERN = re.compile(r"consult.*(healthcare|doctor|physician|provider)", re.IGNORECASE | re.DOTALL)

# Flag severities: 3 = high, 2 = medium, 1 = low
FLAG_SEVERITY = {
    "potential_medical_advice": 3,
    "missing_healthcare_disclaimer": 2,
    "medication_reference": 1,
}

REVIEW_THRESHOLDS = {
    "BLOCK_NONE": None,
    "BLOCK_ONLY_HIGH": 3,
    "BLOCK_MEDIUM_AND_ABOVE": 2,
    "BLOCK_LOW_AND_ABOVE": 1,
}


@dataclass(frozen=True)
class HealthContext:
    conditions: Tuple[str, ...] = ()
    medications: Tuple[str, ...] = ()
    allergies: Tuple[str, ...] = ()
    dietary_restrictions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AIHealthcareResponse:
    content: str
    clinical_flags: Tuple[str, ...]
    contains_medical_advice: bool
    nutritional_guidance: bool
    requires_human_review: bool
    usage: TokenUsage
    cost: float
    disclaimer: str = HEALTHCARE_DISCLAIMER
    request_id: Optional[str] = None


def build_messages(prompt: str, health_context: Optional[HealthContext] = None) -> List[Dict[str, str]]:
    """Compose the system and user messages for a clinical-safe request."""
    user = ""
    if health_context is not None:
        user += "HEALTH CONTEXT (for consideration only, not for medical advice):\n"
        sections = (
            ("Health Conditions", health_context.conditions),
            ("Medications", health_context.medications),
            ("Allergies", health_context.allergies),
            ("Dietary Restrictions", health_context.dietary_restrictions),
        )
        for label, values in sections:
            if values:
                user += f"- {label}: {', '.join(values)}\n"
        user += "\n"
    user += f"USER REQUEST:\n{prompt}"
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


def review_content(text: str, health_context: Optional[HealthContext] = None) -> Tuple[List[str], bool, bool]:
    """Scan a reply for clinical safety flags.

    Returns:
        (flags, contains_medical_advice, nutritional_guidance)
    """
    flags: List[str] = []
    contains_advice = any(p.search(text) for p in MEDICAL_ADVICE_PATTERNS)
    if contains_advice:
        flags.append("potential_medical_advice")
    if health_context is not None and not DISCLAIMER_PATTERN.search(text):
        flags.append("missing_healthcare_disclaimer")
    if health_context is not None and any(
        med and med.lower() in text.lower() for med in health_context.medications
    ):
        flags.append("medication_reference")
    guidance = any(p.search(text) for p in NUTRITION_PATTERNS)
    return flags, contains_advice, guidance


class GenerativeAIClient:
    """Guarded generative AI client.

    Completions are never cached: prompts may carry PHI.
    """

    service = "ai"

    def __init__(
        self,
        settings: AISettings,
        guard: CallGuard,
        client: Optional[AsyncOpenAI] = None
    ):
        """Initialize the client.

        Raises:
            ValueError: If the configured model has no price
        """
        PRICING_TABLE.get_pricing(settings.model)
        self.settings = settings
        self.guard = guard
        if client is None and settings.configured:
            client = AsyncOpenAI(api_key=settings.api_key, base_url=settings.base_url)
        self.client = client

    @property
    def model(self) -> str:
        return self.settings.model

    def is_configured(self) -> bool:
        return self.client is not None

    def _require_configured(self) -> AsyncOpenAI:
        if self.client is None:
            raise ExternalAPIError("AI provider not configured", self.service)
        return self.client

    async def generate(
        self,
        user_id: str,
        prompt: str,
        health_context: Optional[HealthContext] = None,
        tenant_id: str = "default",
        timeout: Optional[float] = None,
        **kwargs: Any
    ) -> AIHealthcareResponse:
        """Generate healthcare-appropriate content.

        Args:
            user_id: User the completion is billed to
            prompt: The user's request
            health_context: Optional conditions, medications and allergies
            tenant_id: Tenant owning the usage record
            timeout: Optional per-call timeout in seconds
            **kwargs: Extra chat completion parameters

        Returns:
            AIHealthcareResponse with safety review and cost

        Raises:
            ValueError: If prompt is empty
            QuotaExceededError: If the user's AI budget is spent
            RateLimitError: If the per-minute ceiling is reached
            ExternalAPIError: If the provider fails
        """
        client = self._require_configured()
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        messages = build_messages(prompt, health_context)

        async def call() -> AIHealthcareResponse:
            response = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
                **kwargs
            )
            usage = TokenUsage.from_response(response)
            text = response.choices[0].message.content or ""
            flags, advice, guidance = review_content(text, health_context)
            return AIHealthcareResponse(
                content=text,
                clinical_flags=tuple(flags),
                contains_medical_advice=advice,
                nutritional_guidance=guidance,
                requires_human_review=self._needs_review(flags),
                usage=usage,
                cost=calculate_cost(self.model, usage),
                request_id=getattr(response, "id", None)
            )

        result = await self.guard.execute(
            self.service, "generate", call,
            user_id=user_id,
            cost=0.0,
            tenant_id=tenant_id,
            timeout=timeout,
            cost_of=lambda r: r.cost
        )
        if result.requires_human_review:
            logger.warning(
                "AI response for user %s flagged for review: %s",
                user_id, ", ".join(result.clinical_flags)
            )
        return result

    async def generate_recipe_recommendation(
        self,
        user_id: str,
        request: str,
        health_context: Optional[HealthContext] = None,
        **kwargs: Any
    ) -> AIHealthcareResponse:
        context = health_context or HealthContext()
        prompt = (
            "Generate a healthy recipe recommendation based on the following:\n\n"
            f"Health Conditions: {', '.join(context.conditions) or 'None specified'}\n"
            f"Dietary Restrictions: {', '.join(context.dietary_restrictions) or 'None'}\n"
            f"Known Allergies: {', '.join(context.allergies) or 'None'}\n\n"
            f"Request: {request}\n\n"
            "Format the response as: recipe name, ingredients, preparation steps, "
            "nutritional highlights, health considerations, healthcare disclaimer."
        )
        return await self.generate(user_id, prompt, health_context, **kwargs)

    def _needs_review(self, flags: Sequence[str]) -> bool:
        minimum = REVIEW_THRESHOLDS[self.settings.safety_threshold]
        if minimum is None:
            return False
        return any(FLAG_SEVERITY.get(flag, 0) >= minimum for flag in flags)

    async def health_check(self) -> bool:
        """Ask for a one-word reply. Not billed to any user."""
        if self.client is None:
            return False
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": "Reply with OK."}],
            max_tokens=5
        )
        return bool(response.choices and response.choices[0].message.content)

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()
