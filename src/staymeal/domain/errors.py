from __future__ import annotations


class MealPlanError(Exception):
    pass


class InvalidIntervalError(MealPlanError):
    pass


class InvalidWindowError(MealPlanError):
    pass


class InvalidAdjustmentError(MealPlanError):
    pass


class InvalidPlanError(MealPlanError):
    pass
