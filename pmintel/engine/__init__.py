"""
PM Intelligence Engine — SQLite-backed workflow, dependency graph and forecasts.

Ticket: 0091_pm_intelligence_engine
Design: DESIGN.md

This package is the engine core. It is project-agnostic: thresholds and the
database location come from the consuming repository's .pm/config.yaml.
Mutations go through the workflow, graph, memory and calibration modules;
analytics, predict and simulate are read-only and recompute on demand.
"""
