"""Adapter over retained MQTT messages.

Every key maps to the retained topic ``<topic_prefix>/<quoted key>``.  The
adapter subscribes to ``<topic_prefix>/#`` once, keeps the latest retained
payload per key in memory and notifies ``subscribe`` listeners when another
client publishes to a key.  Its own publications are filtered out by the
broker (MQTT v5 ``noLocal``).

paho-mqtt runs its network loop on a background thread; every callback is
marshalled onto the asyncio loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable, Mapping
from typing import Any, cast
from urllib.parse import quote, unquote

import paho.mqtt.client as mqtt
from paho.mqtt.subscribeoptions import SubscribeOptions

from pypersist._redact import redact_for_log
from pypersist.adapters.base import Unsubscribe
from pypersist.exceptions import RemoveError, WriteError

ClientFactory = Callable[[str], Any]


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv5,
    )


class MqttAdapter:
    """Key-value store on top of retained MQTT topics."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 1883,
        topic_prefix: str = "pypersist",
        username: str | None = None,
        password: str | None = None,
        tls: bool = False,
        keepalive: int = 60,
        qos: int = 1,
        ready_timeout: float = 5.0,
        settle_delay: float = 0.2,
        publish_timeout: float = 5.0,
        client_id: str | None = None,
        client_factory: ClientFactory | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._prefix = topic_prefix.strip("/")
        self._username = username
        self._password = password
        self._tls = tls
        self._keepalive = keepalive
        self._qos = qos
        self._ready_timeout = ready_timeout
        self._settle_delay = settle_delay
        self._publish_timeout = publish_timeout
        self._client_id = client_id or f"pypersist-{secrets.token_hex(6)}"
        self._client_factory = client_factory or _default_client_factory
        self._logger = logger or logging.getLogger(__name__)

        self._loop: asyncio.AbstractEventLoop | None = None
        self._client: Any = None
        self._ready: asyncio.Event | None = None
        self._starting: asyncio.Future[None] | None = None
        self._running = False
        self._values: dict[str, str] = {}
        self._listeners: dict[str, list[Callable[[], None]]] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    def topic_for(self, key: str) -> str:
        return f"{self._prefix}/{quote(key, safe=':')}"

    def key_for(self, topic: str) -> str | None:
        head = f"{self._prefix}/"
        if not topic.startswith(head):
            return None
        return unquote(topic[len(head) :])

    # ------------------------------------------------------------------
    # Runtime lifecycle
    # ------------------------------------------------------------------

    async def _ensure_started(self) -> None:
        if self._running:
            return
        # Concurrent first callers share one start attempt.
        if self._starting is None:
            self._starting = asyncio.ensure_future(self._start())
        starting = self._starting
        try:
            await asyncio.shield(starting)
        finally:
            if starting.done() and not self._running:
                self._starting = None

    async def _start(self) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        ready = asyncio.Event()
        self._ready = ready

        client = self._client_factory(self._client_id)
        client.enable_logger(self._logger)
        if self._username:
            client.username_pw_set(self._username, self._password)
        if self._tls:
            client.tls_set()

        wildcard = f"{self._prefix}/#"

        def on_connect(c: Any, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected, subscribing topic=%s", wildcard)
            c.subscribe(wildcard, options=SubscribeOptions(qos=self._qos, noLocal=True))

        def on_subscribe(_c: Any, _userdata: Any, _mid: Any, _reason_codes: Any, _properties: Any) -> None:
            loop.call_soon_threadsafe(ready.set)

        def on_message(_c: Any, _userdata: Any, msg: Any) -> None:
            loop.call_soon_threadsafe(self._handle_message, msg.topic, msg.payload)

        def on_disconnect(_c: Any, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_subscribe = on_subscribe
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        self._logger.debug(
            "MQTT adapter start host=%s port=%s prefix=%s client_id=%s",
            self._host,
            self._port,
            self._prefix,
            self._client_id,
        )
        try:
            await loop.run_in_executor(None, self._connect, client)
        except OSError:
            self._logger.debug("MQTT connect to %s:%s failed", self._host, self._port, exc_info=True)
            return

        self._client = client
        self._running = True
        try:
            await asyncio.wait_for(ready.wait(), timeout=self._ready_timeout)
        except TimeoutError:
            self._logger.debug("MQTT subscription not acknowledged within %ss", self._ready_timeout)
            return
        if self._settle_delay > 0:
            # Retained messages follow the SUBACK.
            await asyncio.sleep(self._settle_delay)

    def _connect(self, client: Any) -> None:
        client.connect(self._host, self._port, keepalive=self._keepalive)
        client.loop_start()

    def _stop(self, client: Any) -> None:
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    async def close(self) -> None:
        client = self._client
        self._client = None
        self._running = False
        if client is None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._stop, client)

    # ------------------------------------------------------------------
    # Incoming messages
    # ------------------------------------------------------------------

    def _handle_message(self, topic: str, payload: bytes) -> None:
        key = self.key_for(topic)
        if key is None:
            return
        try:
            value = payload.decode("utf-8") if payload else None
        except UnicodeDecodeError:
            self._logger.debug("MQTT payload on %s is not UTF-8", topic, exc_info=True)
            return

        previous = self._values.get(key)
        if value == previous:
            return
        if value is None:
            self._values.pop(key, None)
        else:
            self._values[key] = value
        self._logger.debug("MQTT update key=%s payload=%s", key, redact_for_log(value, max_string=128))

        for callback in list(self._listeners.get(key, ())):
            try:
                callback()
            except Exception:
                self._logger.debug("MQTT listener failed key=%s", key, exc_info=True)

    # ------------------------------------------------------------------
    # Adapter capability
    # ------------------------------------------------------------------

    async def get_item(self, key: str) -> str | None:
        await self._ensure_started()
        return self._values.get(key)

    async def _publish(self, key: str, payload: bytes) -> None:
        await self._ensure_started()
        client = self._client
        if client is None:
            raise OSError(f"MQTT broker {self._host}:{self._port} is not connected")
        info = client.publish(self.topic_for(key), payload, qos=self._qos, retain=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise OSError(f"publish returned rc={info.rc}")
        if self._qos > 0:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, info.wait_for_publish, self._publish_timeout)
            if not info.is_published():
                raise OSError(f"publish not acknowledged within {self._publish_timeout}s")

    async def set_item(self, key: str, value: str) -> None:
        try:
            await self._publish(key, value.encode("utf-8"))
        except (OSError, RuntimeError, ValueError) as exc:
            raise WriteError(f"Publishing {key!r} failed: {exc}", key=key, adapter_kind="mqtt") from exc
        self._values[key] = value

    async def remove_item(self, key: str) -> None:
        try:
            await self._publish(key, b"")
        except (OSError, RuntimeError, ValueError) as exc:
            raise RemoveError(f"Clearing {key!r} failed: {exc}", key=key, adapter_kind="mqtt") from exc
        self._values.pop(key, None)

    def subscribe(self, key: str, on_change: Callable[[], None]) -> Unsubscribe:
        self._listeners.setdefault(key, []).append(on_change)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and on_change in listeners:
                listeners.remove(on_change)

        return unsubscribe


def create_mqtt_adapter(options: Mapping[str, Any], container_id: str) -> MqttAdapter:
    kwargs: dict[str, Any] = {
        name: options[name]
        for name in (
            "port",
            "topic_prefix",
            "username",
            "password",
            "tls",
            "keepalive",
            "qos",
            "ready_timeout",
            "settle_delay",
            "publish_timeout",
            "client_id",
            "client_factory",
        )
        if name in options
    }
    return MqttAdapter(host=str(options.get("host") or "localhost"), **kwargs)
