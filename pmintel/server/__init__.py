"""
Typed command boundary over the engine.

Ticket: 0091_pm_intelligence_engine
Design: DESIGN.md
"""
