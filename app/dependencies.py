from dataclasses import dataclass

import stripe
from fastapi import Request
from openai import OpenAI

from app.config import Settings
from app.consultation_service import ConsultationGenerator
from app.email_service import EmailService
from app.paypal_service import PayPalClient, PayPalService
from app.reconciliation import ReconciliationEngine
from app.stripe_service import StripeService


@dataclass
class Services:
    stripe: StripeService
    paypal: PayPalService
    generator: ConsultationGenerator
    email: EmailService
    engine: ReconciliationEngine


def build_services(settings: Settings) -> Services:
    """Construct every outbound client once, at process start."""
    # The stripe library reads its HTTP client from module state; this is the
    # only place it is set.
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.provider_timeout_seconds)

    openai_client = None
    if settings.openai_api_key:
        openai_client = OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.llm_timeout_seconds,
            max_retries=1,
        )

    return Services(
        stripe=StripeService(settings.stripe_secret_key, settings.stripe_webhook_secret),
        paypal=PayPalService(
            PayPalClient(
                settings.paypal_client_id,
                settings.paypal_client_secret,
                mode=settings.paypal_mode,
                timeout=settings.provider_timeout_seconds,
            ),
            webhook_id=settings.paypal_webhook_id,
            frontend_url=settings.frontend_url,
        ),
        generator=ConsultationGenerator(openai_client, model=settings.openai_model),
        email=EmailService(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.email_from,
            frontend_url=settings.frontend_url,
            timeout=settings.smtp_timeout_seconds,
        ),
        engine=ReconciliationEngine(),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
