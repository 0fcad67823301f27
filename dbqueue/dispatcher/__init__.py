"""
Scheduled job dispatcher process.
"""
