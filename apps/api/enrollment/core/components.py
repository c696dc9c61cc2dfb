from __future__ import annotations

import asyncio
from dataclasses import dataclass

from enrollment.checkout.links import CheckoutLinkIssuer
from enrollment.core.settings import Settings
from enrollment.core.supabase_rest import SupabaseStore
from enrollment.core.timeutil import Clock, utcnow
from enrollment.enrollments.materializer import BeneficiaryMaterializer
from enrollment.enrollments.state_machine import PendingEnrollmentStateMachine
from enrollment.registry.client import RegistryAdherenceClient, Sleep
from enrollment.webhooks.dispatcher import EventDispatcher
from enrollment.webhooks.signature import SignatureVerifier
from enrollment.webhooks.store import WebhookEventStore


@dataclass(frozen=True)
class Components:
    settings: Settings
    store: SupabaseStore
    checkout_links: CheckoutLinkIssuer
    signature_verifier: SignatureVerifier
    registry: RegistryAdherenceClient
    state_machine: PendingEnrollmentStateMachine
    webhook_events: WebhookEventStore
    dispatcher: EventDispatcher


def build_components(
    settings: Settings,
    store: SupabaseStore | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
    clock: Clock = utcnow,
) -> Components:
    store = store if store is not None else SupabaseStore(settings)
    checkout_links = CheckoutLinkIssuer(settings, store, clock=clock)
    registry = RegistryAdherenceClient(settings, store, sleep=sleep)
    state_machine = PendingEnrollmentStateMachine(
        store,
        registry,
        BeneficiaryMaterializer(store, clock=clock),
        checkout_links,
        clock=clock,
    )
    webhook_events = WebhookEventStore(store, clock=clock)
    return Components(
        settings=settings,
        store=store,
        checkout_links=checkout_links,
        signature_verifier=SignatureVerifier(settings.webhook_secret),
        registry=registry,
        state_machine=state_machine,
        webhook_events=webhook_events,
        dispatcher=EventDispatcher(webhook_events, state_machine, store, registry, clock=clock),
    )
