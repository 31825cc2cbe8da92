"""Event delivery for committed mutations.

Import components directly from submodules, e.g.:
  - core.streaming.publisher import EventEmitter, InMemoryEventPublisher
"""

__all__ = []
