"""
Recurring task scheduling.
"""
