"""
PM Intelligence Engine — local-first work-item tracking and forecasting.

Ticket: 0091_pm_intelligence_engine
Design: DESIGN.md
"""
