"""
Process supervision: forked or in-process children, crash recovery and
signal-driven shutdown.
"""
