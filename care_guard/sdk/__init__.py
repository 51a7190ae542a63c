"""
Service clients for Care Guard.

Each client routes its billable calls through a CallGuard.
"""

from .identity_client import IdentityClient
from .nutrition_client import NutritionClient
from .openai_client import GenerativeAIClient
from .payment_client import PaymentClient

__all__ = ["GenerativeAIClient", "IdentityClient", "NutritionClient", "PaymentClient"]
