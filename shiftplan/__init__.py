"""
ShiftPlan: shared ramp shift plan with single-admin optimistic sync.
"""
__version__ = "0.1.0"
