from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from enrollment.api.deps import get_components
from enrollment.api.v1.schemas.checkout import CheckoutErrorOut, CheckoutLinkOut, CheckoutViewOut
from enrollment.checkout.links import CheckoutLinkError
from enrollment.core.components import Components
from enrollment.core.logging import get_logger
from enrollment.core.supabase_jwt import VerifiedSupabaseAuth, verify_supabase_auth

logger = get_logger("api.checkout")

public_router = APIRouter(tags=["checkout"])
router = APIRouter(tags=["checkout"])
supabase_auth_dependency = Depends(verify_supabase_auth)
components_dependency = Depends(get_components)


def checkout_error_response(exc: CheckoutLinkError) -> JSONResponse:
    body = CheckoutErrorOut(error=exc.message, code=exc.code)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@public_router.get(
    "/subscription-checkout/{token}",
    response_model=CheckoutViewOut,
    responses={404: {"model": CheckoutErrorOut}, 410: {"model": CheckoutErrorOut}},
)
async def get_subscription_checkout(token: str, components: Components = components_dependency):
    try:
        view = await components.checkout_links.redeem(token)
    except CheckoutLinkError as exc:
        logger.info(
            "checkout.redeem_rejected",
            extra={"component": "checkout", "code": exc.code},
        )
        return checkout_error_response(exc)

    return CheckoutViewOut(
        subscriptionId=view.subscription_id,
        status=view.status,
        planId=view.plan_id,
        planName=view.plan_name,
        planPrice=view.plan_price,
        customerName=view.customer_name,
        customerEmail=view.customer_email,
        customerDocument=view.customer_document,
        expiresAt=view.expires_at,
    )


@router.post(
    "/subscriptions/{subscription_id}/checkout-links",
    response_model=CheckoutLinkOut,
    status_code=201,
    responses={404: {"model": CheckoutErrorOut}, 409: {"model": CheckoutErrorOut}},
)
async def create_checkout_link(
    subscription_id: str,
    auth: VerifiedSupabaseAuth = supabase_auth_dependency,
    components: Components = components_dependency,
):
    try:
        issued = await components.checkout_links.issue(subscription_id)
    except CheckoutLinkError as exc:
        return checkout_error_response(exc)

    logger.info(
        "checkout.link_requested",
        extra={"component": "checkout", "subscription_id": subscription_id, "user_id": auth.user_id},
    )
    return CheckoutLinkOut(
        token=issued.token,
        url=issued.url,
        subscriptionId=issued.subscription_id,
        expiresAt=issued.expires_at,
    )
