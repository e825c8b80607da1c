from decimal import Decimal

from salon_payments.money import amounts_match, application_fee, to_major_units, to_minor_units


def test_minor_units_round_half_up():
    assert to_minor_units(Decimal("33.33")) == 3333
    assert to_minor_units("0.005") == 1
    assert to_minor_units(12) == 1200


def test_application_fee_is_computed_from_minor_units():
    # 333300 øre * 2.5% = 8332.5, rounded half up
    assert application_fee(to_minor_units("3333.00"), Decimal("2.5")) == 8333
    assert application_fee(to_minor_units("1000.00"), Decimal("2.5")) == 2500
    assert application_fee(to_minor_units("33.33"), Decimal("2.5")) == 83


def test_major_units_have_two_decimals():
    assert to_major_units(1) == Decimal("0.01")
    assert str(to_major_units(150000)) == "1500.00"


def test_split_tolerance_is_one_minor_unit():
    assert amounts_match(10000, [5000, 5000])
    assert amounts_match(10000, [3333, 3333, 3333])
    assert not amounts_match(10000, [3333, 3333, 3332])
