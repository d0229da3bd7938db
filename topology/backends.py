"""In-process provisioning backends.

`RecordingBackend` records every create call and completes a configurable set
of resource kinds asynchronously: their deferred outputs stay pending until
`step` or `settle` delivers completions in FIFO order, the way a remote
provisioning API would. It is what the pipeline runs against in tests.

`CompositeBackend` routes each create call to the backend of the resource's
provider.
"""

import zlib
from collections import deque
from typing import Any, Iterable, Mapping, Optional, Union

from attrs import define, field
from aws_lambda_powertools import Logger

import common.constants as constants
from topology.deferred import Deferred, Resolver, new_deferred
from topology.resources import Outputs, Provider, ProvisioningBackend, ResourceKind

logger = Logger(service=constants.SERVICE_NAME, child=True)

DEFAULT_DEFERRED_KINDS = frozenset(
    {
        ResourceKind.DB_INSTANCE,
        ResourceKind.TOPIC,
        ResourceKind.SERVICE_ACCOUNT_KEY,
        ResourceKind.KEY_VALUE_TABLE,
        ResourceKind.LOAD_BALANCER,
    }
)


class SimulatedFailure(Exception):
    """A failure injected into a `RecordingBackend` create call."""


@define(slots=True, frozen=True)
class CreateCall:
    sequence: int
    kind: ResourceKind
    name: str
    properties: Mapping[str, Any] = field(factory=dict)


@define(slots=True)
class _Completion:
    name: str
    resolver: Resolver
    outcome: Union[Outputs, Exception]

    def deliver(self) -> None:
        if isinstance(self.outcome, Exception):
            self.resolver.fail(self.outcome)
        else:
            self.resolver.resolve(self.outcome)


class RecordingBackend:
    """Records create calls and simulates their completion.

    Args:
        deferred_kinds: Kinds whose outputs resolve only on `step`/`settle`.
        outputs: Per-node attribute overrides merged into the synthetic outputs.
        failures: Per-node failure messages. The node's create fails.
        hold: Node names whose completion is withheld until `release`.
        images: Image ids returned by `lookup_image`, keyed by name filter.
    """

    def __init__(
        self,
        deferred_kinds: Optional[Iterable[ResourceKind]] = None,
        outputs: Optional[Mapping[str, Mapping[str, Any]]] = None,
        failures: Optional[Mapping[str, str]] = None,
        hold: Iterable[str] = (),
        images: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.deferred_kinds = frozenset(
            DEFAULT_DEFERRED_KINDS if deferred_kinds is None else deferred_kinds
        )
        self.outputs = dict(outputs or {})
        self.failures = dict(failures or {})
        self.hold = set(hold)
        self.images = dict(images or {})
        self.calls: list[CreateCall] = []
        self._queue: deque[_Completion] = deque()
        self._held: dict[str, _Completion] = {}

    # ---------- backend protocol ----------
    def create(
        self, kind: ResourceKind, name: str, properties: Mapping[str, Any]
    ) -> Union[Outputs, Deferred[Outputs]]:
        call = CreateCall(
            sequence=len(self.calls) + 1, kind=kind, name=name, properties=properties
        )
        self.calls.append(call)
        outcome = self._outcome(call)

        if kind not in self.deferred_kinds and name not in self.hold:
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        deferred, resolver = new_deferred(name)
        completion = _Completion(name=name, resolver=resolver, outcome=outcome)
        if name in self.hold:
            self._held[name] = completion
        else:
            self._queue.append(completion)
        return deferred

    def lookup_image(self, name_filter: str) -> str:
        if name_filter in self.images:
            return self.images[name_filter]
        return f"ami-{zlib.crc32(name_filter.encode()):08x}"

    def settle(self) -> None:
        """Deliver queued completions, including ones queued while settling."""
        while self.step():
            pass

    # ---------- simulation controls ----------
    def step(self) -> bool:
        """Deliver the oldest queued completion. False when nothing is queued."""
        if not self._queue:
            return False
        completion = self._queue.popleft()
        logger.debug("Completing recorded resource", node=completion.name)
        completion.deliver()
        return True

    def release(self, name: str) -> None:
        """Queue a held completion so the next `settle` delivers it."""
        self._queue.append(self._held.pop(name))

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def pending(self) -> list[str]:
        return [c.name for c in self._queue] + list(self._held)

    # ---------- inspection ----------
    def call(self, name: str) -> CreateCall:
        for call in self.calls:
            if call.name == name:
                return call
        raise KeyError(f"No create call was issued for '{name}'")

    def issued(self, name: str) -> bool:
        return any(call.name == name for call in self.calls)

    def calls_of(self, kind: ResourceKind) -> list[CreateCall]:
        return [call for call in self.calls if call.kind is kind]

    @property
    def names(self) -> list[str]:
        return [call.name for call in self.calls]

    def _outcome(self, call: CreateCall) -> Union[Outputs, Exception]:
        if call.name in self.failures:
            return SimulatedFailure(self.failures[call.name])
        attributes = _synthesize(call)
        attributes.update(self.outputs.get(call.name, {}))
        return Outputs(resource=call.name, attributes=attributes)


def _synthesize(call: CreateCall) -> dict[str, Any]:
    kind, name = call.kind, call.name
    attributes: dict[str, Any] = {
        "id": f"{kind.value.replace('_', '-')}-{call.sequence:04d}",
        "name": name,
        "arn": f"arn:recorded:{kind.value}:{name}",
    }
    if kind is ResourceKind.DB_INSTANCE:
        port = call.properties.get("port", constants.MYSQL_PORT)
        attributes["address"] = f"{name}.recorded.internal"
        attributes["port"] = str(port)
        attributes["endpoint"] = f"{name}.recorded.internal:{port}"
    elif kind is ResourceKind.LOAD_BALANCER:
        attributes["dns_name"] = f"{name}.elb.recorded"
        attributes["zone_id"] = "ZRECORDED"
    elif kind is ResourceKind.SERVICE_ACCOUNT_KEY:
        attributes["private_key"] = f"recorded-private-key-{call.sequence:04d}"
    elif kind is ResourceKind.SERVICE_ACCOUNT:
        attributes["email"] = call.properties.get("email", f"{name}@recorded")
    elif kind is ResourceKind.LAUNCH_TEMPLATE:
        attributes["latest_version"] = "1"
    return attributes


class CompositeBackend:
    """Routes create calls to the backend registered for the kind's provider."""

    def __init__(self, backends: Mapping[Provider, ProvisioningBackend]) -> None:
        self.backends = dict(backends)

    def create(
        self, kind: ResourceKind, name: str, properties: Mapping[str, Any]
    ) -> Union[Outputs, Deferred[Outputs]]:
        backend = self.backends.get(kind.provider)
        if backend is None:
            raise LookupError(f"No backend registered for provider '{kind.provider.value}'")
        return backend.create(kind, name, properties)

    def lookup_image(self, name_filter: str) -> str:
        return self.backends[Provider.AWS].lookup_image(name_filter)

    def settle(self) -> None:
        # Completing one provider's operation can issue calls on another.
        members = list({id(b): b for b in self.backends.values()}.values())
        while True:
            for backend in members:
                backend.settle()
            if not any(getattr(b, "queued", 0) for b in members):
                return
