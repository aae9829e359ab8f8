from __future__ import annotations

from dataclasses import dataclass, field

from receipt_nest.modules.receipts.models import SourceChannel


@dataclass(frozen=True)
class RawDocument:
    data: bytes
    mime_type: str
    file_name: str
    source_channel: SourceChannel = SourceChannel.EMAIL
    field_name: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class InboundEnvelope:
    """Channel-neutral result of normalizing one inbound email payload."""

    fields: dict[str, str] = field(default_factory=dict)
    attachments: list[RawDocument] = field(default_factory=list)

    def field_value(self, *names: str) -> str:
        for name in names:
            value = self.fields.get(name)
            if value:
                return value
        return ""
