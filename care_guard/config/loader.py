"""
Configuration management and loading.

Handles environment-driven service settings and the YAML budget policy.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

SERVICES = ("nutrition", "ai", "payments", "identity")

SAFETY_THRESHOLDS = (
    "BLOCK_NONE",
    "BLOCK_ONLY_HIGH",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_LOW_AND_ABOVE",
)


@dataclass(frozen=True)
class NutritionSettings:
    """Recipe search and nutrition analysis provider."""
    app_id: Optional[str] = None
    app_key: Optional[str] = None
    base_url: str = "https://api.edamam.com"
    account_user: str = "care-guard"
    requests_per_minute: int = 10

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.app_key)


@dataclass(frozen=True)
class AISettings:
    """Generative AI provider reached through an OpenAI-compatible endpoint."""
    api_key: Optional[str] = None
    base_url: Optional[str] = "https://generativelanguage.googleapis.com/v1beta/openai/"
    model: str = "gemini-1.5-flash"
    temperature: float = 0.1
    max_tokens: int = 1000
    safety_threshold: str = "BLOCK_MEDIUM_AND_ABOVE"
    requests_per_minute: int = 60

    def __post_init__(self):
        """Validate generation parameters."""
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError("temperature must be between 0 and 2")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.safety_threshold not in SAFETY_THRESHOLDS:
            raise ValueError(f"safety_threshold must be one of: {list(SAFETY_THRESHOLDS)}")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class PaymentSettings:
    """Payment and subscription processor."""
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    base_url: str = "https://api.stripe.com"
    requests_per_minute: int = 100

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)


@dataclass(frozen=True)
class IdentitySettings:
    """Identity and session provider."""
    url: Optional[str] = None
    anon_key: Optional[str] = None
    service_key: Optional[str] = None
    requests_per_minute: int = 120

    @property
    def configured(self) -> bool:
        return bool(self.url and self.anon_key)


@dataclass(frozen=True)
class AuditSettings:
    """Audit sink and emergency channel settings."""
    audit_all: bool = False
    db_path: str = "care_guard.db"
    emergency_log_path: Optional[str] = None


@dataclass(frozen=True)
class GatewaySettings:
    """Complete settings for the service orchestrator."""
    nutrition: NutritionSettings = field(default_factory=NutritionSettings)
    ai: AISettings = field(default_factory=AISettings)
    payments: PaymentSettings = field(default_factory=PaymentSettings)
    identity: IdentitySettings = field(default_factory=IdentitySettings)
    audit: AuditSettings = field(default_factory=AuditSettings)
    health_check_timeout: float = 5.0
    budget_policy_path: Optional[str] = None

    def rate_limits(self) -> Dict[str, int]:
        """Requests-per-minute ceiling for every service."""
        return {
            "nutrition": self.nutrition.requests_per_minute,
            "ai": self.ai.requests_per_minute,
            "payments": self.payments.requests_per_minute,
            "identity": self.identity.requests_per_minute,
        }


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_bool(environ: Mapping[str, str], name: str) -> bool:
    return (environ.get(name) or "").strip().lower() in {"1", "true", "yes"}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> GatewaySettings:
    """Build gateway settings from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Validated GatewaySettings

    Raises:
        ValueError: If a numeric variable cannot be parsed or is out of range
    """
    env = os.environ if environ is None else environ

    nutrition = NutritionSettings(
        app_id=env.get("EDAMAM_APP_ID"),
        app_key=env.get("EDAMAM_APP_KEY"),
        base_url=env.get("EDAMAM_BASE_URL") or NutritionSettings.base_url,
        account_user=env.get("EDAMAM_ACCOUNT_USER") or NutritionSettings.account_user,
        requests_per_minute=_env_int(env, "EDAMAM_RATE_LIMIT_PER_MINUTE", 10),
    )
    ai = AISettings(
        api_key=env.get("AI_API_KEY"),
        base_url=env.get("AI_BASE_URL") or AISettings.base_url,
        model=env.get("AI_MODEL") or AISettings.model,
        temperature=_env_float(env, "AI_TEMPERATURE", 0.1),
        max_tokens=_env_int(env, "AI_MAX_TOKENS", 1000),
        safety_threshold=(env.get("AI_SAFETY_THRESHOLD") or AISettings.safety_threshold).upper(),
        requests_per_minute=_env_int(env, "AI_RATE_LIMIT_PER_MINUTE", 60),
    )
    payments = PaymentSettings(
        secret_key=env.get("STRIPE_SECRET_KEY"),
        webhook_secret=env.get("STRIPE_WEBHOOK_SECRET"),
        base_url=env.get("STRIPE_BASE_URL") or PaymentSettings.base_url,
        requests_per_minute=_env_int(env, "STRIPE_RATE_LIMIT_PER_MINUTE", 100),
    )
    identity = IdentitySettings(
        url=env.get("SUPABASE_URL"),
        anon_key=env.get("SUPABASE_ANON_KEY"),
        service_key=env.get("SUPABASE_SERVICE_KEY"),
        requests_per_minute=_env_int(env, "IDENTITY_RATE_LIMIT_PER_MINUTE", 120),
    )
    audit = AuditSettings(
        audit_all=_env_bool(env, "AUDIT_ALL_DATABASE_ACCESS"),
        db_path=env.get("CARE_GUARD_DB_PATH") or AuditSettings.db_path,
        emergency_log_path=env.get("CARE_GUARD_EMERGENCY_AUDIT_LOG"),
    )

    timeout = _env_float(env, "HEALTH_CHECK_TIMEOUT", 5.0)
    if timeout <= 0:
        raise ValueError("HEALTH_CHECK_TIMEOUT must be > 0")

    return GatewaySettings(
        nutrition=nutrition,
        ai=ai,
        payments=payments,
        identity=identity,
        audit=audit,
        health_check_timeout=timeout,
        budget_policy_path=env.get("CARE_GUARD_BUDGET_POLICY"),
    )


# --- budget policy -----------------------------------------------------------

DEFAULT_ALERT_THRESHOLDS: Tuple[float, ...] = (0.5, 0.75, 0.9, 1.0)


@dataclass(frozen=True)
class BudgetPolicy:
    """Monthly spend ceilings applied to every user."""
    monthly_total: float
    services: Dict[str, float]
    alert_thresholds: Tuple[float, ...] = DEFAULT_ALERT_THRESHOLDS
    cache_ttl_seconds: int = 24 * 60 * 60

    def __post_init__(self):
        """Validate budget values."""
        if self.monthly_total <= 0:
            raise ValueError("monthly_total must be > 0")
        for service, amount in self.services.items():
            if service not in SERVICES:
                raise ValueError(f"Unknown service in budget: {service}")
            if amount < 0:
                raise ValueError(f"budget for {service} cannot be negative")
            if amount > self.monthly_total:
                raise ValueError(f"budget for {service} exceeds monthly_total")
        if len(self.alert_thresholds) != 4:
            raise ValueError("alert_thresholds must list exactly four values")
        previous = 0.0
        for threshold in self.alert_thresholds:
            if not previous < threshold <= 1.0:
                raise ValueError("alert_thresholds must be strictly increasing within (0, 1]")
            previous = threshold
        if self.cache_ttl_seconds <= 0:
            raise ValueError("cache_ttl_seconds must be > 0")

    def service_budget(self, service: str) -> float:
        """Sub-budget for a service; services the policy omits are capped only by the total."""
        return self.services.get(service, self.monthly_total)

    @classmethod
    def default(cls) -> "BudgetPolicy":
        return cls(
            monthly_total=10.0,
            services={"nutrition": 4.0, "ai": 4.0, "payments": 1.0, "identity": 1.0},
        )


def load_budget_policy(path: str) -> BudgetPolicy:
    """Load and validate the budget policy from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns.

    Args:
        path: Path to YAML policy file

    Returns:
        Validated BudgetPolicy

    Raises:
        FileNotFoundError: If policy file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the policy is invalid
    """
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError(f"Budget policy file not found: {path}")

    with open(policy_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in policy file {path}: {e}")

    if not raw:
        raise ValueError("Budget policy file is empty")
    if not isinstance(raw, dict):
        raise ValueError("Budget policy must be a mapping")

    allowed_top_keys = {'monthly_total', 'services', 'alert_thresholds', 'cache_ttl_seconds'}
    unknown_keys = set(raw.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown budget policy keys: {unknown_keys}")

    if 'monthly_total' not in raw:
        raise ValueError("Missing required 'monthly_total'")
    monthly_total = raw['monthly_total']
    if not isinstance(monthly_total, (int, float)) or isinstance(monthly_total, bool):
        raise ValueError("'monthly_total' must be a number")

    services_data = raw.get('services', {})
    if not isinstance(services_data, dict):
        raise ValueError("'services' must be a dictionary")
    services = {}
    for name, amount in services_data.items():
        if not isinstance(amount, (int, float)) or isinstance(amount, bool):
            raise ValueError(f"Budget for service '{name}' must be a number")
        services[name] = float(amount)

    thresholds = raw.get('alert_thresholds', list(DEFAULT_ALERT_THRESHOLDS))
    if not isinstance(thresholds, list):
        raise ValueError("'alert_thresholds' must be a list")

    cache_ttl = raw.get('cache_ttl_seconds', 24 * 60 * 60)
    if not isinstance(cache_ttl, int) or isinstance(cache_ttl, bool):
        raise ValueError("'cache_ttl_seconds' must be an integer")

    return BudgetPolicy(
        monthly_total=float(monthly_total),
        services=services,
        alert_thresholds=tuple(float(t) for t in thresholds),
        cache_ttl_seconds=cache_ttl,
    )
