import pytest

from db.models import insert_pricing_rule, upsert_profile
from services.errors import NoPricingRuleFound, ValidationError, ForbiddenError
from services.pricing import resolve_price, save_pricing_rule


def test_global_rule_applies_without_override_or_professional(global_price):
    price = resolve_price("client-1", "personal_package")
    assert price.price_cents == 9990
    assert price.currency == "BRL"
    assert price.source_scope == "global"
    assert price.pricing_rule_id == global_price.id


def test_client_override_beats_professional_rule(global_price):
    insert_pricing_rule("professional", "pro-1", None, "personal_package", 8990, "BRL", True)
    insert_pricing_rule("client_override", "pro-1", "client-1", "personal_package", 7990, "BRL", True)

    price = resolve_price("client-1", "personal_package", "pro-1")
    assert price.price_cents == 7990
    assert price.source_scope == "client_override"
    assert price.source_owner_id == "pro-1"
    assert price.source_client_id == "client-1"

    # Outro cliente do mesmo profissional cai na regra do profissional
    other = resolve_price("client-2", "personal_package", "pro-1")
    assert other.price_cents == 8990
    assert other.source_scope == "professional"


def test_override_of_another_professional_is_ignored_when_professional_given(global_price):
    insert_pricing_rule("client_override", "pro-2", "client-1", "personal_package", 5000, "BRL", True)
    insert_pricing_rule("professional", "pro-1", None, "personal_package", 8990, "BRL", True)

    assert resolve_price("client-1", "personal_package", "pro-1").price_cents == 8990
    # Sem profissional, qualquer override do cliente vale
    assert resolve_price("client-1", "personal_package").price_cents == 5000


def test_professional_rule_needs_professional_id(global_price):
    insert_pricing_rule("professional", "pro-1", None, "personal_package", 8990, "BRL", True)
    assert resolve_price("client-1", "personal_package").source_scope == "global"


def test_inactive_rules_are_skipped(global_price):
    insert_pricing_rule("professional", "pro-1", None, "personal_package", 8990, "BRL", False)
    assert resolve_price("client-1", "personal_package", "pro-1").price_cents == 9990


def test_no_rule_raises():
    with pytest.raises(NoPricingRuleFound):
        resolve_price("client-1", "full_bundle")


def test_blank_product_key_is_validation_error():
    with pytest.raises(ValidationError):
        resolve_price("client-1", "  ")


def test_price_changes_apply_to_the_next_resolution(admin_profile, global_price):
    save_pricing_rule(admin_profile, "global", "personal_package", 10990)
    assert resolve_price("client-1", "personal_package").price_cents == 10990


def test_save_rule_upserts_exact_tuple():
    first = save_pricing_rule("pro-1", "client_override", "personal_package", 7990, client_id="client-1")
    second = save_pricing_rule("pro-1", "client_override", "personal_package", 6990, client_id="client-1")
    assert first.id == second.id
    assert second.price_cents == 6990
    assert resolve_price("client-1", "personal_package", "pro-1").price_cents == 6990


def test_deactivated_rule_is_kept_but_not_resolved(global_price):
    save_pricing_rule("pro-1", "professional", "personal_package", 8990)
    rule = save_pricing_rule("pro-1", "professional", "personal_package", 8990, active=False)
    assert rule.active is False
    assert resolve_price("client-1", "personal_package", "pro-1").source_scope == "global"


def test_only_admins_set_global_prices():
    upsert_profile("pro-1", "Personal", "pro@example.com")
    with pytest.raises(ForbiddenError):
        save_pricing_rule("pro-1", "global", "personal_package", 9990)


@pytest.mark.parametrize("bad_price", [0, -10, "abc", 12.5, None, True])
def test_save_rule_rejects_invalid_price(bad_price):
    with pytest.raises(ValidationError):
        save_pricing_rule("pro-1", "professional", "personal_package", bad_price)


def test_client_override_requires_client_id():
    with pytest.raises(ValidationError):
        save_pricing_rule("pro-1", "client_override", "personal_package", 7990)
