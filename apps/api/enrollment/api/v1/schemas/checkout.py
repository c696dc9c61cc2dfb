from datetime import datetime

from pydantic import BaseModel


class CheckoutViewOut(BaseModel):
    success: bool = True
    subscriptionId: str
    status: str
    planId: str | None = None
    planName: str | None = None
    planPrice: float | None = None
    customerName: str | None = None
    customerEmail: str | None = None
    customerDocument: str
    expiresAt: datetime


class CheckoutLinkOut(BaseModel):
    token: str
    url: str
    subscriptionId: str
    expiresAt: datetime


class CheckoutErrorOut(BaseModel):
    success: bool = False
    error: str
    code: str
