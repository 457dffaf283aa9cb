"""
Practice Scheduling Test Suite
Availability, calendar OAuth, mirroring and reconciliation
"""
