"""
Outlook / Microsoft 365 mail connector via Microsoft Graph API.

Each non-empty mail folder is a FOLDER entity named by its display name.
Messages share one field set (subject, body, sender, recipients and
attachments), so fields are static and samples come from the folder's
most recent messages. Incremental discovery keeps only folders that
received mail after the cutoff.

Export and delete are not supported; ERASURE against mailboxes goes
through the manual deletion path.

Data source fields used:
    credentials.tenant_id / client_id / client_secret
    credentials.refresh_token   delegated access to the signed-in user's mailbox
    config.user_id              mailbox owner for app-only access
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional

from datalens.core.constants import MAX_OBJECTS_PER_BUCKET, MAX_SAMPLE_CHARS
from datalens.core.types import DataSourceType, EntityType
from datalens.core.utils import ensure_utc
from datalens.exceptions import ConnectorError, GraphAPIError, OperationNotSupportedError

from .base import (
    ConnectorCapabilities,
    DiscoveredEntity,
    DiscoveredField,
    DiscoveryInput,
    InventorySummary,
    Record,
)
from .content import MAX_DOWNLOAD_BYTES, TEXT_EXTENSIONS, extension_of
from .graph_base import GraphConnectorBase

logger = logging.getLogger(__name__)

MAIL_SCHEMA = "Mail"
FILE_ATTACHMENT = "#microsoft.graph.fileAttachment"
MESSAGE_SELECT = "id,subject,body,sender,toRecipients,hasAttachments,receivedDateTime"

MESSAGE_FIELDS = [
    DiscoveredField(name="subject", data_type="string", nullable=False),
    DiscoveredField(name="body", data_type="text", nullable=False),
    DiscoveredField(name="sender", data_type="string", nullable=False),
    DiscoveredField(name="to_recipients", data_type="string"),
    DiscoveredField(name="attachments", data_type="text"),
]

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


def html_to_text(html: str) -> str:
    """Crude tag strip for sampling; entity decoding is not needed for detection."""
    return _SPACE_RE.sub(" ", _TAG_RE.sub(" ", html)).strip()


def _address(recipient: Optional[Mapping[str, Any]]) -> str:
    email = (recipient or {}).get("emailAddress") or {}
    name = email.get("name") or ""
    address = email.get("address") or ""
    if name and address and name != address:
        return f"{name} <{address}>"
    return address or name


def _graph_timestamp(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def _is_text_attachment(attachment: Mapping[str, Any]) -> bool:
    content_type = (attachment.get("contentType") or "").lower()
    if content_type.startswith("text/") or "json" in content_type or "xml" in content_type:
        return True
    return extension_of(attachment.get("name") or "") in TEXT_EXTENSIONS


class OutlookConnector(GraphConnectorBase):
    """Connector for one Exchange Online mailbox."""

    def __init__(
        self,
        source_type: str = DataSourceType.OUTLOOK.value,
        base_url: Optional[str] = None,
        token_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        max_items: int = MAX_OBJECTS_PER_BUCKET,
    ) -> None:
        super().__init__(source_type, base_url=base_url, token_url=token_url, max_retries=max_retries)
        self._max_items = max_items
        self._mailbox_path = "/me"
        # folder display name -> folder id
        self._folders: dict[str, str] = {}

    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities(
            can_discover=True,
            can_sample=True,
            can_export=False,
            can_delete=False,
            supports_incremental=True,
            max_concurrency=1,
        )

    async def connect(self, data_source: Any) -> None:
        if self._client is not None:
            return
        self._mailbox_path = self._resolve_principal(data_source)
        user = await self._open_client(data_source, self._mailbox_path)
        logger.info(f"Connected to mailbox {user.get('mail') or user.get('id', self._mailbox_path)}")

    async def discover_schema(
        self, discovery_input: DiscoveryInput
    ) -> tuple[InventorySummary, list[DiscoveredEntity]]:
        client = self._require_client()
        changed_since = ensure_utc(discovery_input.changed_since)
        self._folders.clear()

        entities: list[DiscoveredEntity] = []
        try:
            folders = await client.get_all_pages(f"{self._mailbox_path}/mailFolders?$top=50")
            for folder in folders:
                count = folder.get("totalItemCount") or 0
                if count <= 0:
                    continue
                name = folder.get("displayName") or folder["id"]
                if changed_since is not None and not await self._received_since(folder["id"], changed_since):
                    continue
                self._folders[name] = folder["id"]
                entities.append(
                    DiscoveredEntity(
                        name=name,
                        type=EntityType.FOLDER,
                        schema=MAIL_SCHEMA,
                        row_count=count,
                    )
                )
                if len(entities) >= self._max_items:
                    logger.warning(f"Mail folder listing capped at {self._max_items} folders")
                    break
        except GraphAPIError as e:
            raise ConnectorError(
                f"Listing mail folders failed: {e.message}",
                connector_type=self._source_type,
                operation="discover_schema",
            ) from e

        return InventorySummary(total_entities=len(entities)), entities

    async def _received_since(self, folder_id: str, cutoff: datetime) -> bool:
        data = await self._require_client().get(
            f"{self._mailbox_path}/mailFolders/{folder_id}/messages",
            params={
                "$filter": f"receivedDateTime gt {_graph_timestamp(cutoff)}",
                "$top": "1",
                "$select": "id",
            },
        )
        return bool(data.get("value"))

    async def get_fields(self, entity_name: str) -> list[DiscoveredField]:
        return list(MESSAGE_FIELDS)

    async def sample_data(self, entity_name: str, field_name: str, limit: int) -> list[str]:
        if limit <= 0:
            return []
        folder_id = self._folders.get(entity_name)
        if folder_id is None:
            return []

        client = self._require_client()
        try:
            data = await client.get(
                f"{self._mailbox_path}/mailFolders/{folder_id}/messages",
                params={
                    "$top": str(limit),
                    "$select": MESSAGE_SELECT,
                    "$orderby": "receivedDateTime desc",
                },
            )
            samples = []
            for message in data.get("value", [])[:limit]:
                text = await self._field_text(message, field_name)
                if text:
                    samples.append(text[:MAX_SAMPLE_CHARS])
            return samples
        except GraphAPIError as e:
            logger.warning(f"Sampling {entity_name}.{field_name} failed: {e.message}")
            return []

    async def _field_text(self, message: Mapping[str, Any], field_name: str) -> str:
        if field_name == "subject":
            return message.get("subject") or ""
        if field_name == "body":
            body = message.get("body") or {}
            content = body.get("content") or ""
            if (body.get("contentType") or "").lower() == "html":
                content = html_to_text(content)
            return content.strip()
        if field_name == "sender":
            return _address(message.get("sender"))
        if field_name == "to_recipients":
            return ", ".join(a for a in map(_address, message.get("toRecipients") or []) if a)
        if field_name == "attachments" and message.get("hasAttachments"):
            return await self._attachment_text(message["id"])
        return ""

    async def _attachment_text(self, message_id: str) -> str:
        client = self._require_client()
        base = f"{self._mailbox_path}/messages/{message_id}/attachments"
        listing = await client.get(base, params={"$select": "id,name,size,contentType"})

        parts = []
        for attachment in listing.get("value", []):
            if attachment.get("@odata.type") != FILE_ATTACHMENT:
                continue
            if (attachment.get("size") or 0) > MAX_DOWNLOAD_BYTES or not _is_text_attachment(attachment):
                continue
            data = await client.get_bytes(f"{base}/{attachment['id']}/$value")
            text = data.decode("utf-8", errors="replace").strip()
            if text:
                parts.append(f"[Attachment: {attachment.get('name', attachment['id'])}]\n{text}")
        return "\n\n".join(parts)

    async def export(self, entity_name: str, filter: Mapping[str, Any]) -> list[Record]:
        raise OperationNotSupportedError(
            "Export is not supported for mailboxes",
            connector_type=self._source_type,
            operation="export",
        )

    async def delete(self, entity_name: str, filter: Mapping[str, Any]) -> int:
        raise OperationNotSupportedError(
            "Record-level delete is not supported for mailboxes",
            connector_type=self._source_type,
            operation="delete",
        )

    async def close(self) -> None:
        await super().close()
        self._folders.clear()
