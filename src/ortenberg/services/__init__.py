"""Intake services."""

from ortenberg.services.withdrawal_manager import WithdrawalManager

__all__ = ["WithdrawalManager"]
