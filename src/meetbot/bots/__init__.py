"""Meeting bot lifecycle -- join coordination, process supervision, and recovery.

Provides the BotOrchestrator public API (join, stop, queries, health),
the ProcessSupervisor driving one external bot process per instance over
newline-delimited JSON IPC, the ReconnectionManager (exponential backoff
with a retry ceiling), the HealthMonitor and CleanupJanitor background
scans, and the BotRegistry holding every tracked BotInstance.
"""
