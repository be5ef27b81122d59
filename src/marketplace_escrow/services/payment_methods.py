"""Stored payment methods.

Only masked card data and the processor's token are ever persisted; raw
card details go straight to the provider and are dropped.
"""

from __future__ import annotations

import logging
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.clock import Clock
from marketplace_escrow.errors import AuthorizationError, NotFoundError, ValidationError
from marketplace_escrow.models import PaymentMethod
from marketplace_escrow.providers.base import CardDetails, PaymentMethodRef, PaymentProvider
from marketplace_escrow.services.actors import Actor

logger = logging.getLogger(__name__)


class PaymentMethodService:
    def __init__(self, session: AsyncSession, provider: PaymentProvider, *, clock: Clock):
        self.session = session
        self.provider = provider
        self.clock = clock

    async def get_method(self, method_id: UUID, actor: Actor) -> PaymentMethod:
        method = await self.session.get(PaymentMethod, method_id)
        if method is None:
            raise NotFoundError("Payment method not found")
        if method.user_id != actor.user_id and not actor.is_admin:
            raise AuthorizationError("Access denied")
        return method

    async def list_methods(self, actor: Actor) -> list[PaymentMethod]:
        result = await self.session.execute(
            select(PaymentMethod)
            .where(PaymentMethod.user_id == actor.user_id, PaymentMethod.is_active.is_(True))
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
        )
        return list(result.scalars().all())

    async def validate(self, method_id: UUID, actor: Actor) -> bool:
        """Ask the provider whether a stored method can still be charged."""
        method = await self.get_method(method_id, actor)
        if not method.is_active:
            return False

        valid = await self.provider.validate_payment_method(
            PaymentMethodRef.from_masked_details(
                str(method.id), method.type, method.masked_details or {}
            )
        )
        if valid and not method.is_verified:
            now = self.clock.now()
            method.is_verified = True
            method.verified_at = now
            method.updated_at = now
            await self.session.flush()
        return valid

    async def register_card(
        self,
        actor: Actor,
        card: CardDetails,
        *,
        billing_address: dict | None = None,
        make_default: bool = False,
    ) -> PaymentMethod:
        """Tokenize a card with the provider and store its masked details."""
        if actor.user_id is None:
            raise AuthorizationError("Only users can register payment methods")
        if not self.provider.capabilities().create_payment_method:
            raise ValidationError(
                f"Provider '{self.provider.provider_name}' cannot register cards"
            )

        created = await self.provider.create_payment_method(card)

        has_default = await self._default_for(actor.user_id) is not None
        if make_default:
            await self._clear_default(actor.user_id)

        now = self.clock.now()
        method = PaymentMethod(
            id=uuid4(),
            user_id=actor.user_id,
            type="credit_card",
            provider=self.provider.provider_name,
            masked_details=created.masked_details,
            billing_address=billing_address,
            is_default=make_default or not has_default,
            is_active=True,
            is_verified=True,
            verified_at=now,
            created_at=now,
            updated_at=now,
        )
        self.session.add(method)
        await self.session.flush()
        logger.info(
            "Registered payment method %s for user %s", method.id, actor.user_id
        )
        return method

    async def set_default(self, method_id: UUID, actor: Actor) -> PaymentMethod:
        method = await self.get_method(method_id, actor)
        if not method.is_active:
            raise ValidationError("Inactive payment methods cannot be the default")
        if method.is_default:
            return method

        await self._clear_default(method.user_id)
        method.is_default = True
        method.updated_at = self.clock.now()
        await self.session.flush()
        return method

    async def deactivate(self, method_id: UUID, actor: Actor) -> PaymentMethod:
        """Soft-delete: the row stays for the transactions that reference it."""
        method = await self.get_method(method_id, actor)
        method.is_active = False
        method.is_default = False
        method.updated_at = self.clock.now()
        await self.session.flush()
        return method

    async def _default_for(self, user_id: UUID) -> PaymentMethod | None:
        result = await self.session.execute(
            select(PaymentMethod).where(
                PaymentMethod.user_id == user_id,
                PaymentMethod.is_default.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def _clear_default(self, user_id: UUID) -> None:
        await self.session.flush()
        await self.session.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False, updated_at=self.clock.now()),
            execution_options={"synchronize_session": "fetch"},
        )
