"""Core business logic components.

This module exports the main business logic classes:
- BridgeManager: Routes events between the platforms and drains queues
- TicketStateMachine: Owns ticket status transitions
- MessageQueue: Ordered per-ticket delivery queue
- OutageTracker: Per-adapter availability and reconnect policy
- BackoffPolicy: Sliding-window backoff shared by reconnects and restarts
- BridgeService: Process lifecycle around the bridge
- Watchdog: Supervisor that restarts the bridge process
"""

from ticket_bridge.core.backoff import BackoffDecision, BackoffEvent, BackoffPolicy
from ticket_bridge.core.bridge import BridgeHealth, BridgeManager, InboundOutcome
from ticket_bridge.core.commands import Command, CommandName, parse_command
from ticket_bridge.core.message_queue import DrainResult, MessageQueue
from ticket_bridge.core.outage import AdapterState, ConnectionStatus, ErrorClass, OutageTracker
from ticket_bridge.core.service import BridgeService, create_service
from ticket_bridge.core.ticket_state import InvalidTransition, TicketStateMachine, Transition
from ticket_bridge.core.watchdog import RestartHistory, Watchdog

__all__ = [
    "AdapterState",
    "BackoffDecision",
    "BackoffEvent",
    "BackoffPolicy",
    "BridgeHealth",
    "BridgeManager",
    "BridgeService",
    "Command",
    "CommandName",
    "ConnectionStatus",
    "DrainResult",
    "ErrorClass",
    "InboundOutcome",
    "InvalidTransition",
    "MessageQueue",
    "OutageTracker",
    "RestartHistory",
    "TicketStateMachine",
    "Transition",
    "Watchdog",
    "create_service",
    "parse_command",
]
