"""Autonomous remediation: action registry, arbitration and component-keyed dispatch."""
