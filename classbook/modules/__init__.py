# Classbook - Modules Package
"""
Core business logic modules for Classbook: the document store, scheduling
helpers, notification templates, preferences and dispatch, push delivery,
timetables, attendance recording, reports and role checks.
"""
