from relay.models.base import Base  # noqa: F401

from relay.models.outbox import OutboxRecord  # noqa: F401
from relay.models.integration import IntegrationCredential  # noqa: F401
from relay.models.domain import EmailLog, HistoryEntry, Post, ScheduleItem  # noqa: F401
