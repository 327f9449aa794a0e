from decimal import Decimal

import pytest

from rentpay.services.charge_service import calculate_fees

RULES = {
    "us_bank_account": {"percent": Decimal("0.008"), "cap": Decimal("5.00")},
    "card": {"percent": Decimal("0.029"), "cap": Decimal("50.00")},
}


def test_ach_fee_hits_cap_and_landlord_absorbs():
    fees = calculate_fees(Decimal("1800.00"), "us_bank_account", "landlord_absorbs", rules=RULES)
    assert fees.platform_fee == Decimal("5.00")
    assert fees.charge_amount == Decimal("1800.00")
    assert fees.net_amount == Decimal("1795.00")


def test_ach_fee_below_cap():
    fees = calculate_fees("500", "us_bank_account", rules=RULES)
    assert fees.platform_fee == Decimal("4.00")
    assert fees.net_amount == Decimal("496.00")


def test_tenant_pays_adds_fee_to_charge():
    fees = calculate_fees(Decimal("1000.00"), "card", "tenant_pays", rules=RULES)
    assert fees.platform_fee == Decimal("29.00")
    assert fees.charge_amount == Decimal("1029.00")
    assert fees.net_amount == Decimal("1000.00")


def test_split_shares_fee():
    fees = calculate_fees(Decimal("1000.00"), "card", "split", rules=RULES)
    assert fees.charge_amount == Decimal("1014.50")
    assert fees.net_amount == Decimal("985.50")


def test_wallets_use_card_rule():
    fees = calculate_fees(Decimal("100.00"), "apple_pay", rules=RULES)
    assert fees.platform_fee == Decimal("2.90")


def test_card_fee_is_capped():
    fees = calculate_fees(Decimal("5000.00"), "card", rules=RULES)
    assert fees.platform_fee == Decimal("50.00")


def test_explicit_fee_replaces_computed_fee():
    fees = calculate_fees(Decimal("1800.00"), "us_bank_account", fee_override="0", rules=RULES)
    assert fees.platform_fee == Decimal("0.00")
    assert fees.net_amount == Decimal("1800.00")


def test_fee_larger_than_payment_is_rejected():
    with pytest.raises(ValueError):
        calculate_fees(Decimal("100.00"), "card", fee_override="150.00", rules=RULES)


@pytest.mark.parametrize("amount", ["0", "-5.00"])
def test_non_positive_amount_is_rejected(amount):
    with pytest.raises(ValueError):
        calculate_fees(amount, "card", rules=RULES)


def test_unknown_fee_mode_is_rejected():
    with pytest.raises(ValueError):
        calculate_fees("100", "card", "tenant_splits", rules=RULES)


def test_default_rules_come_from_config(app):
    fees = calculate_fees(Decimal("1800.00"), "us_bank_account")
    assert fees.platform_fee == Decimal("5.00")
    assert fees.to_dict()["net_amount"] == "1795.00"
