from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from app import checkout, fulfilment, store
from app.auth import verify_token
from app.database import SessionLocal
from app.dependencies import Services, get_services
from app.domain import CONSULTATION_PRICES, ConsultationType, LogStatus
from app.errors import NotFoundError, ValidationError
from app.schemas import ConsultationRequest, PaymentRequest, StripeConfirmRequest

router = APIRouter(prefix="/api")


def _schedule_fulfilment(background_tasks: BackgroundTasks, services: Services, result) -> None:
    if result is not None and result.fan_out:
        background_tasks.add_task(fulfilment.fulfil_in_background, SessionLocal, services, result.order_id)


@router.post("/payments/stripe/create-intent")
def create_stripe_intent(request: PaymentRequest, services: Services = Depends(get_services)):
    with SessionLocal() as db:
        return checkout.create_stripe_payment(db, services, request)


@router.post("/payments/paypal/create-order")
def create_paypal_order(request: PaymentRequest, services: Services = Depends(get_services)):
    with SessionLocal() as db:
        return checkout.create_paypal_payment(db, services, request)


@router.post("/payments/paypal/capture/{paypal_order_id}")
def capture_paypal_order(
    paypal_order_id: str,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    with SessionLocal() as db:
        order, result = checkout.capture_paypal_payment(db, services, paypal_order_id)
        response = {
            "success": order.status == "completed",
            "orderId": order.id,
            "status": order.status,
            "captureId": order.paypal_capture_id,
            "orderType": order.type,
        }

    _schedule_fulfilment(background_tasks, services, result)
    return response


@router.post("/payments/stripe/confirm")
def confirm_stripe_payment(
    request: StripeConfirmRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    with SessionLocal() as db:
        order, result, intent_status = checkout.confirm_stripe_payment(
            db, services, request.payment_intent_id
        )
        response = {
            "success": order.status == "completed",
            "orderId": order.id,
            "status": order.status,
            "paymentIntentStatus": intent_status,
            "orderType": order.type,
        }

    _schedule_fulfilment(background_tasks, services, result)
    return response


@router.get("/payments/status/{order_id}")
def payment_status(order_id: str):
    with SessionLocal() as db:
        order = store.get_order(db, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return {
            "success": True,
            "orderId": order.id,
            "status": order.status,
            "orderType": order.type,
            "amount": order.amount,
            "currency": order.currency,
            "paymentMethod": order.payment_method,
        }


@router.get("/payments/methods")
def payment_methods(services: Services = Depends(get_services)):
    return {
        "success": True,
        "methods": [
            {
                "id": "stripe",
                "name": "Credit/Debit Card",
                "description": "Pay with Visa, Mastercard, American Express",
                "enabled": services.stripe.enabled,
            },
            {
                "id": "paypal",
                "name": "PayPal",
                "description": "Pay with your PayPal account",
                "enabled": services.paypal.enabled,
            },
        ],
    }


@router.post("/consultations/generate")
def generate_consultation(request: ConsultationRequest, services: Services = Depends(get_services)):
    with SessionLocal() as db:
        consultation = fulfilment.submit_consultation(db, services, request)
        completed = consultation.status == "completed"
        return {
            "success": True,
            "consultationId": consultation.id,
            "status": consultation.status,
            "result": consultation.ai_result,
            "type": consultation.consultation_type,
            "message": "Consultation generated successfully" if completed
            else "Consultation will be generated once payment is confirmed",
        }


_CONSULTATION_CATALOGUE = {
    ConsultationType.BASIC: {
        "name": "Basic Reading",
        "description": "Essential feng shui guidance and crystal recommendations",
        "duration": "15-20 minutes",
        "features": [
            "Personal element analysis",
            "Lucky colors and directions",
            "Basic crystal recommendations",
            "Home arrangement tips",
        ],
    },
    ConsultationType.DETAILED: {
        "name": "Detailed Analysis",
        "description": "Comprehensive feng shui consultation with BaZi analysis",
        "duration": "30-45 minutes",
        "features": [
            "Complete BaZi four pillars analysis",
            "Annual feng shui forecast",
            "Detailed home/office guidance",
            "Specific crystal placements",
            "Career and relationship advice",
        ],
        "popular": True,
    },
    ConsultationType.COMPREHENSIVE: {
        "name": "Master Consultation",
        "description": "Complete life transformation guide with ongoing support",
        "duration": "60+ minutes",
        "features": [
            "Full life feng shui blueprint",
            "Room-by-room detailed guidance",
            "Monthly feng shui calendar",
            "Advanced crystal programming",
            "Wealth and health optimization",
            "Emergency feng shui solutions",
        ],
    },
}


@router.get("/consultations/types/pricing")
def consultation_pricing():
    return {
        "success": True,
        "consultationTypes": [
            dict(entry, id=kind.value, price=CONSULTATION_PRICES[kind])
            for kind, entry in _CONSULTATION_CATALOGUE.items()
        ],
    }


@router.get("/consultations/{consultation_id}")
def get_consultation(consultation_id: str):
    with SessionLocal() as db:
        consultation = store.get_consultation_by_id(db, consultation_id)
        if consultation is None:
            raise NotFoundError("Consultation not found")
        return {
            "success": True,
            "consultation": {
                "id": consultation.id,
                "orderId": consultation.order_id,
                "type": consultation.consultation_type,
                "result": consultation.ai_result,
                "status": consultation.status,
                "createdAt": consultation.created_at,
                "generatedAt": consultation.generated_at,
            },
        }


@router.get("/admin/payment-logs")
def payment_logs(
    status: Optional[str] = None,
    order_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    auth=Depends(verify_token),
):
    if status is not None and status not in {s.value for s in LogStatus}:
        raise ValidationError(f"Unknown log status: {status}")
    with SessionLocal() as db:
        logs = store.list_payment_logs(db, status=status, order_id=order_id, limit=limit)
        return {
            "logs": [
                {
                    "id": entry.id,
                    "orderId": entry.order_id,
                    "provider": entry.provider,
                    "providerEventId": entry.provider_event_id,
                    "eventType": entry.event_type,
                    "status": entry.status,
                    "createdAt": entry.created_at,
                }
                for entry in logs
            ]
        }
