"""OS call-provider integration.

The call state machine lives in ``calls.controller``; this package only
mirrors it into the platform's system call UI:
controller -> adapter -> native shell (CallKit / Telecom) -> lock screen UI.
"""
