from .config import settings
from .ids import IdGenerator
from .event_log import Datum, EventLog
from .dispatcher import Dispatcher, Signal

__all__ = ["settings", "IdGenerator", "Datum", "EventLog", "Dispatcher", "Signal"]

'''
The shared state of the runtime: configuration, the bounded Event Log and the Dispatcher that fans Datums out.
Everything else talks to the rest of the system only through Dispatcher.push and the log's read queries.
'''
