"""Follow-up Orchestration Engine for Overdue Invoice Collections

This package coordinates the reminder lifecycle for overdue invoices:
- Builds and validates culturally calibrated reminder sequences
- Schedules sends inside the business calendar
- Escalates tone and timing based on customer behaviour
- Consolidates multiple overdue invoices into one reminder per customer
"""

__version__ = "1.0.0"
