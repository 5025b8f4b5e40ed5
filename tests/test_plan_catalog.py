from reconciler.schemas.webhook import GatewayNotes
from reconciler.services.plan_catalog import get_plan, infer_plan, list_plans


def test_catalog_matches_published_prices():
    prices = {(p.plan_type, p.variant): (p.amount, p.duration_months) for p in list_plans()}
    assert prices == {
        ("premium", "monthly"): (45100, 1),
        ("premium", "yearly"): (261100, 12),
        ("super_user", "topup_451"): (45100, 1),
        ("super_user", "topup_4510"): (451000, 24),
    }


def test_only_super_user_packs_carry_question_credits():
    questions = {(p.plan_type, p.variant): p.questions for p in list_plans()}
    assert questions == {
        ("premium", "monthly"): 0,
        ("premium", "yearly"): 0,
        ("super_user", "topup_451"): 100,
        ("super_user", "topup_4510"): 1000,
    }


def test_get_plan_accepts_aliases():
    assert get_plan("premium", "annual").variant == "yearly"
    assert get_plan("superuser", "topup_4510").plan_type == "super_user"
    assert get_plan("gold", "monthly") is None


def test_notes_win_over_amount():
    notes = GatewayNotes(plan_type="super_user", plan_variant="topup_451")
    plan = infer_plan(notes, amount=261100)
    assert (plan.plan_type, plan.variant) == ("super_user", "topup_451")


def test_subscription_type_note():
    plan = infer_plan(GatewayNotes(subscription_type="premium_yearly"))
    assert (plan.plan_type, plan.variant) == ("premium", "yearly")


def test_billing_period_note():
    plan = infer_plan(GatewayNotes(plan_type="premium", billing_period="yearly"))
    assert plan.variant == "yearly"


def test_gateway_plan_id():
    plan = infer_plan(GatewayNotes(), gateway_plan_id="plan_super_topup_4510")
    assert (plan.plan_type, plan.variant) == ("super_user", "topup_4510")


def test_description_text():
    plan = infer_plan(GatewayNotes(), description="QaaQ Premium Yearly Subscription")
    assert (plan.plan_type, plan.variant) == ("premium", "yearly")


def test_ambiguous_amount_prefers_premium():
    plan = infer_plan(GatewayNotes(), amount=45100)
    assert (plan.plan_type, plan.variant) == ("premium", "monthly")


def test_unique_amount():
    plan = infer_plan(GatewayNotes(), amount=451000)
    assert (plan.plan_type, plan.variant) == ("super_user", "topup_4510")


def test_falls_back_to_premium_monthly():
    plan = infer_plan(GatewayNotes(), amount=100)
    assert (plan.plan_type, plan.variant) == ("premium", "monthly")
