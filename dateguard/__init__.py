"""
DateGuard Emergency Escalation Core
===================================

Session lifecycle, trigger detection and guardian notification fan-out for a
personal-safety application.  A user arms a time-boxed safety session; if a
trigger fires (panic button, decoy code, timer expiry, missed check-in or a
manual alert) every guardian in the user's chosen groups is notified on every
channel they expose, exactly once per session, and every step is recorded in
a tamper-evident audit log.

Delivery providers (SMS, push, email) run live when credentials are
configured and in an explicit simulated mode otherwise.
"""

__version__ = "0.1.0"
