"""
Fee Service - Centralized fee calculation for job payments and worker earnings
One fee rate is used for both the capture and the payout side.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any
from config import Config
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def quantize_money(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


class FeeService:
    """Platform fee arithmetic (fees on top model)"""

    def __init__(self, fee_percentage: Decimal = None, min_amount: Decimal = None, max_amount: Decimal = None):
        self.fee_percentage = Decimal(str(fee_percentage if fee_percentage is not None else Config.SERVICE_FEE_PERCENTAGE))
        self.min_amount = quantize_money(min_amount if min_amount is not None else Config.MIN_JOB_AMOUNT)
        self.max_amount = quantize_money(max_amount if max_amount is not None else Config.MAX_JOB_AMOUNT)

    @property
    def fee_rate(self) -> Decimal:
        return self.fee_percentage / Decimal("100")

    def validate_job_amount(self, payment_amount) -> Decimal:
        try:
            amount = quantize_money(payment_amount)
        except Exception:
            raise ValidationError(f"Invalid payment amount: {payment_amount}")
        if amount < self.min_amount or amount > self.max_amount:
            raise ValidationError(
                f"Payment amount must be between ${self.min_amount} and ${self.max_amount}",
                details={"payment_amount": str(amount)},
            )
        return amount

    def calculate_service_fee(self, payment_amount) -> Decimal:
        return (quantize_money(payment_amount) * self.fee_rate).quantize(CENT, rounding=ROUND_HALF_UP)

    def calculate_job_amounts(self, payment_amount) -> Dict[str, Any]:
        """
        Returns: {
            'payment_amount': Decimal,  # worker-facing amount
            'service_fee': Decimal,
            'total_amount': Decimal,    # captured from the poster
            'fee_percentage': Decimal
        }
        """
        amount = quantize_money(payment_amount)
        service_fee = self.calculate_service_fee(amount)
        total = amount + service_fee
        logger.debug(f"Calculated job amounts: payment=${amount} fee=${service_fee} total=${total}")
        return {
            "payment_amount": amount,
            "service_fee": service_fee,
            "total_amount": total,
            "fee_percentage": self.fee_percentage,
        }

    def calculate_earning_amounts(self, payment_amount, service_fee) -> Dict[str, Decimal]:
        """Earning split: net_amount = amount - service_fee"""
        amount = quantize_money(payment_amount)
        fee = quantize_money(service_fee)
        return {"amount": amount, "service_fee": fee, "net_amount": amount - fee}
