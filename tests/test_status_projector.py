import asyncio
from datetime import datetime, timedelta

from reconciler.db.memory_store import InMemoryStore
from reconciler.models.payment import Payment
from reconciler.models.subscription import PlanType, Subscription, UserSubscriptionStatus
from reconciler.services.status_projector import StatusProjector, current_subscription

NOW = datetime(2025, 9, 1, 10, 0, 0)


def sub(status, created_days_ago=0, plan_type="premium", period_end=None, **kwargs):
    return Subscription(
        user_id="u1",
        plan_type=plan_type,
        status=status,
        current_period_end=period_end,
        created_at=NOW - timedelta(days=created_days_ago),
        **kwargs,
    )


def test_active_beats_newer_created():
    active = sub("active", created_days_ago=30)
    pending = sub("created", created_days_ago=1)

    assert current_subscription([pending, active], PlanType.PREMIUM) is active


def test_newest_terminal_when_nothing_is_live():
    old = sub("expired", created_days_ago=400)
    recent = sub("cancelled", created_days_ago=20)

    assert current_subscription([old, recent], PlanType.PREMIUM) is recent


def test_other_plan_types_are_ignored():
    assert current_subscription([sub("active", plan_type="super_user")], PlanType.PREMIUM) is None


def test_projection_is_idempotent():
    async def scenario():
        store = InMemoryStore()
        await store.save_subscription(sub("active", period_end=NOW + timedelta(days=10)))
        await store.save_payment(Payment(payment_id="pay_1", amount=45100, status="captured",
                                         resolved_user_id="u1"))
        await store.save_payment(Payment(payment_id="pay_2", amount=99900, status="failed",
                                         resolved_user_id="u1"))
        projector = StatusProjector(store)

        first = await projector.project("u1", NOW)
        second = await projector.project("u1", NOW + timedelta(minutes=5))

        assert first.is_premium is True
        assert first.total_spent == 45100
        assert second.projection_key() == first.projection_key()
        assert store.statuses["u1"].updated_at == NOW

    asyncio.run(scenario())


def test_cancelled_subscription_entitles_until_period_end():
    async def scenario():
        store = InMemoryStore()
        await store.save_subscription(sub("cancelled", period_end=NOW + timedelta(days=3)))
        projector = StatusProjector(store)

        assert (await projector.compute("u1", NOW)).is_premium is True
        assert (await projector.compute("u1", NOW + timedelta(days=4))).is_premium is False

    asyncio.run(scenario())


def test_legacy_grant_is_carried_until_it_expires():
    async def scenario():
        store = InMemoryStore()
        await store.save_status(UserSubscriptionStatus(
            user_id="u1", is_super_user=True, super_user_expires_at=NOW + timedelta(days=1)
        ))
        projector = StatusProjector(store)

        assert (await projector.compute("u1", NOW)).is_super_user is True
        assert (await projector.compute("u1", NOW + timedelta(days=2))).is_super_user is False

    asyncio.run(scenario())


def test_questions_remaining_counts_live_packs_only():
    async def scenario():
        store = InMemoryStore()
        await store.save_subscription(sub("active", plan_type="super_user", period_end=NOW + timedelta(days=10),
                                          questions_granted=100, questions_used=40))
        await store.save_subscription(sub("cancelled", plan_type="super_user", period_end=NOW + timedelta(days=2),
                                          questions_granted=1000, questions_used=0))
        await store.save_subscription(sub("expired", plan_type="super_user", period_end=NOW - timedelta(days=1),
                                          questions_granted=100, questions_used=0))
        projector = StatusProjector(store)

        assert (await projector.compute("u1", NOW)).questions_remaining == 1060
        assert (await projector.compute("u1", NOW + timedelta(days=3))).questions_remaining == 60

    asyncio.run(scenario())


def test_legacy_grant_credits_can_be_spent():
    async def scenario():
        store = InMemoryStore()
        await store.save_status(UserSubscriptionStatus(
            user_id="u1", is_super_user=True, super_user_expires_at=NOW + timedelta(days=1),
            questions_remaining=1,
        ))
        projector = StatusProjector(store)

        spent = await projector.consume_legacy_question("u1", NOW)
        assert spent.questions_remaining == 0
        assert (await projector.compute("u1", NOW)).questions_remaining == 0
        assert await projector.consume_legacy_question("u1", NOW) is None

    asyncio.run(scenario())
