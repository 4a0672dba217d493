"""
Rebalance date rules.

Weekly strategies rebalance on Monday, monthly ones on the 1st and 15th
rolled forward to the next weekday. No exchange holiday calendar is applied.
"""

from datetime import date, timedelta

from .models import RebalanceRule


def weekly_rebalance_date(today: date) -> date:
    """Current Monday if today is Monday, otherwise the most recent one."""
    return today - timedelta(days=today.weekday())


def monthly_rebalance_date(today: date) -> date:
    """The 1st or 15th of the month (whichever half ``today`` is in), moved off weekends."""
    anchor = today.replace(day=15 if today.day >= 15 else 1)
    weekday = anchor.weekday()
    if weekday == 5:  # Saturday
        return anchor + timedelta(days=2)
    if weekday == 6:  # Sunday
        return anchor + timedelta(days=1)
    return anchor


def target_rebalance_date(rule: RebalanceRule, today: date) -> date:
    """Date whose rebalance entries a run on ``today`` looks for."""
    if rule is RebalanceRule.WEEKLY_MONDAY:
        return weekly_rebalance_date(today)
    if rule is RebalanceRule.MONTHLY_1ST_15TH:
        return monthly_rebalance_date(today)
    raise ValueError(f"Unknown rebalance rule: {rule}")


def is_rebalance_day(rule: RebalanceRule, today: date) -> bool:
    return target_rebalance_date(rule, today) == today
