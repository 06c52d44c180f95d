"""Capability registry: methods, hooks, subscriptions and options.

Everything is registered before the read loop starts. After that the registry
is only read, except for option values which are written once by ``init``.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from clnplugin.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Handlers receive the request params and return (or resolve to) the result.
Handler = Callable[[Any], Any]
Listener = Callable[[Any], Any]

RESERVED_METHODS = frozenset({"getmanifest", "init"})
OPTION_TYPES = ("string", "int", "bool", "flag")

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


async def call_handler(handler: Handler, params: Any) -> Any:
    """Call a sync or async handler and return its result."""
    result = handler(params)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass(slots=True)
class Method:
    """RPC method exposed to the host and its users."""

    name: str
    handler: Handler
    usage: str = ""
    description: str = ""
    long_description: str = ""

    async def invoke(self, params: Any) -> Any:
        return await call_handler(self.handler, params)

    def to_manifest(self) -> dict[str, str]:
        return {
            "name": self.name,
            "usage": self.usage,
            "description": self.description,
            "long_description": self.long_description,
        }


@dataclass(slots=True)
class Hook:
    """Host hook; the host waits for the result before it continues."""

    name: str
    handler: Handler

    async def invoke(self, params: Any) -> Any:
        return await call_handler(self.handler, params)


@dataclass(slots=True)
class Subscription:
    """Notification topic with an ordered list of listeners."""

    topic: str
    listeners: list[Listener] = field(default_factory=list)

    def add_listener(self, listener: Listener) -> None:
        if not callable(listener):
            raise ConfigurationError(
                f"Listener for '{self.topic}' must be callable"
            )
        self.listeners.append(listener)

    def emit(self, params: Any) -> list[Awaitable[Any]]:
        """Call every listener in order.

        Listener exceptions are logged and do not stop the fan-out. Awaitables
        returned by async listeners are handed back to the caller to schedule.
        """
        pending: list[Awaitable[Any]] = []
        for listener in self.listeners:
            try:
                result = listener(params)
            except Exception:
                logger.exception(
                    "subscription_listener_failed", extra={"topic": self.topic}
                )
                continue
            if inspect.isawaitable(result):
                pending.append(result)
        return pending


@dataclass(slots=True)
class Option:
    """Startup option the host passes to the plugin."""

    name: str
    default: Any
    description: str
    type: str = "string"
    value: Any = None

    def to_manifest(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "default": self.default,
            "description": self.description,
        }


def coerce_option_value(value: Any, option_type: str) -> Any:
    """Coerce a declared default to its option type.

    Raises:
        ValueError: If the value cannot be represented as ``option_type``.
    """
    if option_type == "string":
        return str(value)
    if option_type == "int":
        if isinstance(value, bool):
            raise ValueError(f"{value!r} is not an int")
        return int(value)
    if option_type in ("bool", "flag"):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"{value!r} is not a bool")
    raise ValueError(f"Unknown option type: {option_type}")


class CapabilityRegistry:
    """Registry of everything the plugin reports in its manifest."""

    def __init__(self, dynamic: bool = True) -> None:
        self.dynamic = dynamic
        self._methods: dict[str, Method] = {}
        self._hooks: dict[str, Hook] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._options: dict[str, Option] = {}

    def register_method(
        self,
        name: str,
        handler: Handler,
        usage: str = "",
        description: str = "",
        long_description: str = "",
    ) -> Method:
        if not name or handler is None:
            raise ConfigurationError(
                "A method needs at least a name and a handler to be registered"
            )
        if not callable(handler):
            raise ConfigurationError(f"Handler for method '{name}' is not callable")
        if name in RESERVED_METHODS:
            raise ConfigurationError(f"Method name '{name}' is reserved")
        if name in self._methods:
            raise ConfigurationError(f"Method '{name}' already registered")

        method = Method(
            name=name,
            handler=handler,
            usage=usage or "",
            description=description or "",
            long_description=long_description or description or "",
        )
        self._methods[name] = method
        logger.debug(f"Registered method: {name}")
        return method

    def register_hook(self, name: str, handler: Handler) -> Hook:
        if not name or not callable(handler):
            raise ConfigurationError(
                "A hook needs a name and a callable handler to be registered"
            )
        if name in self._hooks:
            logger.debug(f"Replacing handler for hook: {name}")
        hook = Hook(name=name, handler=handler)
        self._hooks[name] = hook
        return hook

    def register_option(
        self,
        name: str,
        default: Any,
        description: str,
        type: str = "string",
    ) -> Option:
        if not name or default is None or not description:
            raise ConfigurationError(
                "An option needs at least a name, a default value and a description"
            )
        option_type = type or "string"
        if option_type not in OPTION_TYPES:
            raise ConfigurationError(
                f"Option '{name}' has unknown type '{option_type}'"
            )
        try:
            coerced = coerce_option_value(default, option_type)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Default for option '{name}' is not a valid {option_type}: {e}"
            ) from None

        option = Option(
            name=name,
            default=coerced,
            description=description,
            type=option_type,
            value=coerced,
        )
        self._options[name] = option
        return option

    def subscribe(self, topic: str) -> Subscription:
        if not topic:
            raise ConfigurationError("A subscription needs a topic")
        subscription = self._subscriptions.get(topic)
        if subscription is None:
            subscription = Subscription(topic=topic)
            self._subscriptions[topic] = subscription
        return subscription

    def get_method(self, name: str) -> Method | None:
        return self._methods.get(name)

    def get_hook(self, name: str) -> Hook | None:
        return self._hooks.get(name)

    def get_subscription(self, topic: str) -> Subscription | None:
        return self._subscriptions.get(topic)

    def get_option(self, name: str) -> Option | None:
        return self._options.get(name)

    @property
    def methods(self) -> dict[str, Method]:
        return dict(self._methods)

    @property
    def hooks(self) -> dict[str, Hook]:
        return dict(self._hooks)

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        return dict(self._subscriptions)

    @property
    def options(self) -> dict[str, Option]:
        return dict(self._options)

    def apply_option_values(self, values: dict[str, Any]) -> None:
        """Store option values received from the host, as given."""
        for name, value in values.items():
            option = self._options.get(name)
            if option is None:
                logger.warning("unknown_option_from_host", extra={"option": name})
                continue
            option.value = value

    def build_manifest(self) -> dict[str, Any]:
        return {
            "options": [opt.to_manifest() for opt in self._options.values()],
            "rpcmethods": [m.to_manifest() for m in self._methods.values()],
            "subscriptions": list(self._subscriptions),
            "hooks": list(self._hooks),
            "dynamic": self.dynamic,
        }
