"""DachiStream backend package.

Cyclic Twitch chat buffering and message selection for an AI co-host:
storage interface, engine (buffer, selection, context, scheduler), status
and log sink, control API, Twitch integration and the reply responder.

Modules are structured for single responsibility and testability.
"""
