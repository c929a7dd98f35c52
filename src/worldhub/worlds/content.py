"""Content collaborator contract.

The engine never interprets bundle internals. The market variant is resolved
once, when a world is loaded, into a ``ContentDescriptor``; nothing
downstream branches on the cultural context again.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from worldhub.hub.state import WORLD_IDS, check_world_index


class CulturalContext(str, Enum):
    SWEDISH = "swedish_municipal"
    GERMAN = "german_municipal"
    FRENCH = "french_municipal"
    DUTCH = "dutch_municipal"


class Fidelity(str, Enum):
    FULL = "full"
    REDUCED = "reduced"


def resolve_variant(cultural_context: str) -> CulturalContext:
    try:
        return CulturalContext(cultural_context)
    except ValueError:
        valid = [c.value for c in CulturalContext]
        raise ValueError(f"Unknown cultural context {cultural_context!r}. Valid: {valid}") from None


@dataclass(frozen=True)
class ContentDescriptor:
    """Tagged variant describing which bundle to load for one world."""

    world_index: int
    world_id: str
    variant: CulturalContext
    version: str
    full_size_bytes: int
    reduced_size_bytes: int

    def size_for(self, fidelity: Fidelity) -> int:
        return self.full_size_bytes if fidelity is Fidelity.FULL else self.reduced_size_bytes


@dataclass(frozen=True)
class ContentBundle:
    """Opaque, versioned world content plus its completion rules."""

    world_index: int
    variant: CulturalContext
    version: str
    fidelity: Fidelity
    payload: bytes
    min_score_to_complete: int
    prerequisites: tuple[int, ...] = ()

    @property
    def size_bytes(self) -> int:
        return len(self.payload)


@dataclass(frozen=True)
class NetworkProfile:
    """Client-reported link quality used to estimate transfer time."""

    bandwidth_kbps: float
    latency_ms: float = 0.0

    def estimated_seconds(self, size_bytes: int) -> float:
        if self.bandwidth_kbps <= 0:
            return float("inf")
        return self.latency_ms / 1000 + (size_bytes * 8 / 1000) / self.bandwidth_kbps


class ContentProvider(Protocol):
    async def describe(self, world_index: int, variant: CulturalContext) -> ContentDescriptor: ...

    async def fetch(self, descriptor: ContentDescriptor, fidelity: Fidelity) -> ContentBundle: ...


class StaticContentProvider:
    """In-process provider serving deterministic placeholder bundles.

    Used for development and tests. ``delays`` injects artificial fetch
    latency per fidelity.
    """

    def __init__(
        self,
        *,
        full_size: int = 512 * 1024,
        reduced_size: int = 64 * 1024,
        min_scores: dict[int, int] | None = None,
        delays: dict[Fidelity, float] | None = None,
        version: str = "1",
    ) -> None:
        self.full_size = full_size
        self.reduced_size = reduced_size
        self.min_scores = min_scores or {}
        self.delays = delays or {}
        self.version = version
        self.fetches: list[tuple[int, Fidelity]] = []

    async def describe(self, world_index: int, variant: CulturalContext) -> ContentDescriptor:
        check_world_index(world_index)
        return ContentDescriptor(
            world_index=world_index,
            world_id=WORLD_IDS[world_index],
            variant=variant,
            version=self.version,
            full_size_bytes=self.full_size,
            reduced_size_bytes=self.reduced_size,
        )

    async def fetch(self, descriptor: ContentDescriptor, fidelity: Fidelity) -> ContentBundle:
        self.fetches.append((descriptor.world_index, fidelity))
        delay = self.delays.get(fidelity, 0.0)
        if delay:
            await asyncio.sleep(delay)
        seed = f"{descriptor.world_id}:{descriptor.variant.value}:{descriptor.version}".encode()
        block = hashlib.sha256(seed).digest()
        size = descriptor.size_for(fidelity)
        payload = (block * (size // len(block) + 1))[:size]
        return ContentBundle(
            world_index=descriptor.world_index,
            variant=descriptor.variant,
            version=descriptor.version,
            fidelity=fidelity,
            payload=payload,
            min_score_to_complete=self.min_scores.get(descriptor.world_index, 80),
            prerequisites=tuple(range(1, descriptor.world_index)),
        )
