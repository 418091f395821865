import pytest

from courier import models
from courier.core.exceptions import ConflictError, ValidationError
from courier.otp_service import check_code, generate_otp_pair


def make_otp(pickup_verified=False):
    return models.OrderOtp(
        order_id=1,
        pickup_otp="4821",
        delivery_otp="1937",
        pickup_verified=pickup_verified,
        delivery_verified=False,
    )


@pytest.mark.unit
class TestCheckCode:
    def test_pickup_code_marks_verified(self):
        otp = make_otp()
        check_code(otp, "pickup", "4821")
        assert otp.pickup_verified is True

    @pytest.mark.parametrize("code", ["4822", "", "48210", None, 4821, "４８２１"])
    def test_wrong_or_malformed_pickup_code(self, code):
        otp = make_otp()
        with pytest.raises(ValidationError):
            check_code(otp, "pickup", code)
        assert not otp.pickup_verified

    def test_delivery_needs_pickup_first(self):
        with pytest.raises(ConflictError):
            check_code(make_otp(), "delivery", "1937")

    def test_delivery_code(self):
        otp = make_otp(pickup_verified=True)
        with pytest.raises(ValidationError):
            check_code(otp, "delivery", "4821")
        check_code(otp, "delivery", "1937")
        assert otp.delivery_verified is True

    def test_unknown_stage(self):
        with pytest.raises(ValidationError):
            check_code(make_otp(), "handover", "4821")


@pytest.mark.unit
def test_generated_codes_are_distinct_four_digit_strings():
    for _ in range(50):
        pickup, delivery = generate_otp_pair()
        assert pickup != delivery
        assert pickup.isdigit() and len(pickup) == 4
        assert delivery.isdigit() and len(delivery) == 4
