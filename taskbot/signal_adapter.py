"""Signal CLI adapter."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

from taskbot.events import EventChannel
from taskbot.models import IncomingMessage

LOGGER = logging.getLogger(__name__)

PLATFORM = "signal"
DEFAULT_CHUNK_SIZE = 4000


def split_message(text: str, max_len: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    """Split text into chunks of at most ``max_len`` characters.

    Each cut prefers the last newline inside the window, then the last space,
    and only falls back to a hard cut when neither exists.
    """
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_len:
        window = remaining[:max_len]
        cut = window.rfind("\n")
        if cut <= 0:
            cut = window.rfind(" ")
        if cut <= 0:
            chunks.append(window)
            remaining = remaining[max_len:]
            continue
        chunks.append(remaining[:cut])
        remaining = remaining[cut + 1 :]
    if remaining or not chunks:
        chunks.append(remaining)
    return chunks


def _is_group(recipient: str) -> bool:
    return not recipient.startswith("+")


class SignalAdapter:
    """Adapter around signal-cli JSON commands."""

    def __init__(
        self,
        signal_cli_path: str,
        account: str,
        poll_interval_seconds: float,
        owner_number: str,
        allowed_senders: frozenset[str],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._signal_cli_path = signal_cli_path
        self._account = account
        self._poll_interval_seconds = poll_interval_seconds
        self._owner_number = owner_number
        self._allowed_senders = allowed_senders
        self._chunk_size = chunk_size

    async def poll_messages(self) -> AsyncIterator[IncomingMessage]:
        """Poll receive endpoint and yield normalized message objects."""

        while True:
            process = await asyncio.create_subprocess_exec(
                self._signal_cli_path,
                "-o",
                "json",
                "-a",
                self._account,
                "receive",
                "-t",
                str(int(self._poll_interval_seconds)),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
            if process.returncode != 0:
                LOGGER.warning("signal-cli receive failed: %s", stderr.decode().strip())
                await asyncio.sleep(self._poll_interval_seconds)
                continue

            for line in stdout.decode().splitlines():
                line = line.strip()
                if not line:
                    continue
                try:
                    message = _to_message(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    continue
                if message is None:
                    continue
                if not message.user_id.startswith("+"):
                    sender = await self.resolve_number(message.user_id)
                    if message.chat_id == message.user_id:
                        message.chat_id = sender
                    message.user_id = sender
                if message.user_id not in self._allowed_senders:
                    LOGGER.warning("Dropping message from unauthorized sender %s", message.user_id)
                    continue
                yield message

    async def resolve_number(self, uuid: str) -> str:
        """Return the phone number for a UUID by scanning the contacts list.

        Falls back to the owner number if not found.
        """
        stdout = await self._run("listContacts", json_output=True, check=False)
        for line in stdout.splitlines():
            try:
                contact = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(contact, dict) and contact.get("uuid") == uuid and contact.get("number"):
                return contact["number"]
        LOGGER.warning("Could not resolve UUID %s via contacts, falling back to owner number", uuid)
        return self._owner_number

    async def send_message(self, recipient: str, text: str) -> int | None:
        """Send one message and return its Signal timestamp when reported."""

        stdout = await self._run("send", "-m", text, *_recipient_args(recipient), json_output=True)
        return _parse_timestamp(stdout)

    async def send_text(self, chat_id: str, text: str) -> None:
        """Send text of any length, chunked to the configured size."""

        for chunk in split_message(text, self._chunk_size):
            await self.send_message(chat_id, chunk)

    async def edit_message(self, recipient: str, timestamp: int, text: str) -> None:
        await self._run(
            "send",
            "--edit-timestamp",
            str(timestamp),
            "-m",
            text,
            *_recipient_args(recipient),
        )

    async def delete_message(self, recipient: str, timestamp: int) -> None:
        await self._run("remoteDelete", "-t", str(timestamp), *_recipient_args(recipient))

    async def _run(self, command: str, *args: str, json_output: bool = False, check: bool = True) -> str:
        prefix = ["-o", "json"] if json_output else []
        process = await asyncio.create_subprocess_exec(
            self._signal_cli_path,
            *prefix,
            "-a",
            self._account,
            command,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if check and process.returncode != 0:
            raise RuntimeError(f"signal-cli {command} failed: {stderr.decode().strip()}")
        return stdout.decode()


class StatusIndicator:
    """A single status message that is sent once, edited, then deleted."""

    def __init__(self, adapter: SignalAdapter, chat_id: str) -> None:
        self._adapter = adapter
        self._chat_id = chat_id
        self._timestamp: int | None = None

    async def show(self, text: str) -> None:
        if self._timestamp is None:
            self._timestamp = await self._adapter.send_message(self._chat_id, text)
        else:
            await self._adapter.edit_message(self._chat_id, self._timestamp, text)

    async def clear(self) -> None:
        if self._timestamp is None:
            return
        timestamp, self._timestamp = self._timestamp, None
        await self._adapter.delete_message(self._chat_id, timestamp)

    async def follow(self, channel: EventChannel) -> None:
        """Render tool events from ``channel`` until it closes, then clean up.

        Status failures are logged; they never affect the turn.
        """
        try:
            async for event in channel:
                try:
                    await self.show(f"Running {event.name}...")
                except Exception:  # noqa: BLE001
                    LOGGER.warning("Failed to update status indicator", exc_info=True)
        finally:
            try:
                await self.clear()
            except Exception:  # noqa: BLE001
                LOGGER.warning("Failed to delete status indicator", exc_info=True)


def _recipient_args(recipient: str) -> list[str]:
    return ["-g", recipient] if _is_group(recipient) else [recipient]


def _parse_timestamp(stdout: str) -> int | None:
    for line in stdout.splitlines():
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and isinstance(payload.get("timestamp"), int):
            return payload["timestamp"]
    return None


def _to_message(payload: dict[str, object]) -> IncomingMessage | None:
    envelope = payload.get("envelope")
    if not isinstance(envelope, dict):
        return None
    data_message = envelope.get("dataMessage")
    if not isinstance(data_message, dict):
        return None

    text = data_message.get("message")
    text = text.strip() if isinstance(text, str) else ""
    if not text:
        return None

    source = str(envelope.get("sourceNumber") or envelope.get("source") or "unknown")
    group_info = data_message.get("groupInfo")
    if isinstance(group_info, dict) and isinstance(group_info.get("groupId"), str):
        chat_id = group_info["groupId"]
    else:
        chat_id = source

    return IncomingMessage(
        platform=PLATFORM,
        user_id=source,
        chat_id=chat_id,
        text=text,
        user_name=str(envelope.get("sourceName") or ""),
    )
