"""
KPI Dashboard Backend
Blueprint registry.
"""
