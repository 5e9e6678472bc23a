"""Client for the remote coding assistant: one request, one reply."""

import logging
import os

import msgspec
import requests

log = logging.getLogger("iot_serial.assistant")


class AssistantRequest(msgspec.Struct):
    message: str
    context: str = ""


class AssistantReply(msgspec.Struct):
    response: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None


class AssistantClient:
    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float | int = 30.0,
    ):
        self.url = url or os.getenv("IOT_ASSISTANT_URL", "")
        self.api_key = api_key or os.getenv("IOT_ASSISTANT_KEY")
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"AssistantClient({self.url!r})"

    def ask(self, message: str, context: str = "") -> AssistantReply:
        if not message.strip():
            return AssistantReply(error="Message is required")
        if not self.url:
            return AssistantReply(error="No assistant URL configured")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = msgspec.json.encode(AssistantRequest(message, context))

        log.debug("Asking %s (%d chars)", self.url, len(message))
        try:
            resp = requests.post(
                self.url, data=body, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            log.warning("Assistant request failed (%s)", exc)
            return AssistantReply(error=f"Request failed: {exc}")

        try:
            reply = msgspec.json.decode(resp.content, type=AssistantReply)
        except msgspec.DecodeError:
            reply = AssistantReply(error=f"Bad reply (HTTP {resp.status_code})")

        if not resp.ok and reply.error is None:
            reply = AssistantReply(error=f"HTTP {resp.status_code}")
        if reply.error:
            log.warning("Assistant error: %s", reply.error)
        return reply
