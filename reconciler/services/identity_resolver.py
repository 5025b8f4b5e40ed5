"""
reconciler/services/identity_resolver.py

Purpose: Map a gateway event to exactly one internal user

Priority order:
1. notes.user_id naming an existing user
2. owner of an already-known gateway subscription
3. payer email (placeholder addresses skipped)
4. payer contact number, normalized
Anything else raises UnresolvedIdentity.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from reconciler.core.exceptions import UnresolvedIdentity
from reconciler.core.logging import get_logger
from reconciler.db.store import Store
from reconciler.models.payment import Payment, ResolutionMethod
from reconciler.models.user import User
from reconciler.schemas.webhook import GatewayEvent
from utils.validation_utils import (
    DEFAULT_PLACEHOLDER_LOCAL_PARTS,
    is_generic_email,
    normalize_email,
    phone_match_candidates,
)

logger = get_logger(__name__)


@dataclass
class Resolution:
    user_id: str
    method: ResolutionMethod


def _unique(users: Iterable[User]) -> List[User]:
    seen: Dict[str, User] = {}
    for user in users:
        seen.setdefault(user.id, user)
    return list(seen.values())


class IdentityResolver:
    """Read-only: never creates or modifies users."""

    def __init__(
        self,
        store: Store,
        default_country_code: str = "91",
        generic_email_addresses: Optional[List[str]] = None,
        generic_email_domains: Optional[List[str]] = None,
        generic_email_local_parts: Optional[List[str]] = None
    ):
        self.store = store
        self.default_country_code = default_country_code
        self.generic_email_addresses = generic_email_addresses or []
        self.generic_email_domains = generic_email_domains or []
        self.generic_email_local_parts = (
            list(DEFAULT_PLACEHOLDER_LOCAL_PARTS) if generic_email_local_parts is None else generic_email_local_parts
        )

    async def resolve(self, event: GatewayEvent, payment: Optional[Payment] = None) -> Resolution:
        """
        Resolves the owner of an event.

        A payment row that already has an owner (including one assigned by
        an operator) keeps it.

        Raises:
            UnresolvedIdentity: when no rule yields exactly one user
        """
        if payment is not None and payment.resolved_user_id:
            return Resolution(
                user_id=payment.resolved_user_id,
                method=ResolutionMethod(payment.resolution_method or ResolutionMethod.MANUAL)
            )

        for rule in (self._by_notes, self._by_subscription, self._by_email, self._by_contact):
            resolution = await rule(event)
            if resolution is not None:
                logger.info(
                    f"Resolved {event.payment_id or event.gateway_subscription_id} to user "
                    f"{resolution.user_id} via {resolution.method.value}"
                )
                return resolution

        raise UnresolvedIdentity(details={
            "payment_id": event.payment_id,
            "gateway_subscription_id": event.gateway_subscription_id,
            "email": event.payment.email if event.payment else None,
            "contact": event.payment.contact if event.payment else None,
        })

    async def _by_notes(self, event: GatewayEvent) -> Optional[Resolution]:
        user_id = event.notes.user_id
        if not user_id:
            return None
        user = await self.store.get_user(user_id)
        if user is None:
            logger.warning(f"notes.user_id {user_id} does not match any user")
            return None
        return Resolution(user_id=user.id, method=ResolutionMethod.NOTES_USER_ID)

    async def _by_subscription(self, event: GatewayEvent) -> Optional[Resolution]:
        gateway_subscription_id = event.gateway_subscription_id
        if not gateway_subscription_id:
            return None
        subscription = await self.store.get_subscription_by_gateway_id(gateway_subscription_id)
        if subscription is None:
            return None
        return Resolution(user_id=subscription.user_id, method=ResolutionMethod.SUBSCRIPTION_OWNER)

    async def _by_email(self, event: GatewayEvent) -> Optional[Resolution]:
        if event.payment is None:
            return None
        email = normalize_email(event.payment.email)
        if not email:
            return None
        if is_generic_email(
            email, self.generic_email_addresses, self.generic_email_domains, self.generic_email_local_parts
        ):
            logger.debug(f"Skipping placeholder email {email}")
            return None

        users = _unique(await self.store.find_users_by_email(email))
        if len(users) > 1:
            logger.warning(f"Email {email} matches {len(users)} users; not using it")
            return None
        if users:
            return Resolution(user_id=users[0].id, method=ResolutionMethod.EMAIL)
        return None

    async def _by_contact(self, event: GatewayEvent) -> Optional[Resolution]:
        if event.payment is None:
            return None
        candidates = phone_match_candidates(event.payment.contact, self.default_country_code)
        if not candidates:
            return None

        users = _unique(await self.store.find_users_by_phone(candidates))
        if len(users) > 1:
            logger.warning(f"Contact {candidates[0]} matches {len(users)} users; not using it")
            return None
        if users:
            return Resolution(user_id=users[0].id, method=ResolutionMethod.CONTACT)
        return None
