"""Synthetic batch generation for the producer.

Reference data is loaded once into an immutable value and passed to the
generator functions; nothing here keeps module-level state.
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass
from typing import Optional

from routestream.core.codec import encode_batch
from routestream.core.crypto import CryptoIntegrityLayer, tag_message

LOGGER = logging.getLogger(__name__)

MIN_BATCH_SIZE = 49
MAX_BATCH_SIZE = 499


@dataclass(frozen=True)
class ReferenceData:
    """Names and places used to build random messages."""

    names: tuple[str, ...]
    origins: tuple[str, ...]
    destinations: tuple[str, ...]

    def __post_init__(self) -> None:
        for label in ("names", "origins", "destinations"):
            if not getattr(self, label):
                raise ValueError(f"Reference data has no {label}")

    @classmethod
    def from_dict(cls, raw: dict) -> "ReferenceData":
        return cls(
            names=tuple(raw.get("names", [])),
            origins=tuple(raw.get("origins", [])),
            destinations=tuple(raw.get("destinations", [])),
        )


def load_reference_data(path: str) -> ReferenceData:
    """Load reference data from a JSON file with three string lists."""

    with open(path, "r", encoding="utf-8") as handle:
        data = ReferenceData.from_dict(json.load(handle))
    LOGGER.info(
        "Loaded data: %s names, %s origins, %s destinations",
        len(data.names),
        len(data.origins),
        len(data.destinations),
    )
    return data


def generate_message(data: ReferenceData, rng: random.Random) -> dict[str, str]:
    return {
        "name": rng.choice(data.names),
        "origin": rng.choice(data.origins),
        "destination": rng.choice(data.destinations),
    }


def generate_batch(
    data: ReferenceData,
    crypto: CryptoIntegrityLayer,
    rng: Optional[random.Random] = None,
    size: Optional[int] = None,
) -> list[str]:
    """Generate a batch of tagged, encrypted envelopes.

    The size is drawn uniformly from [49, 499] unless given explicitly.
    """

    rng = rng or random.Random()
    count = size if size is not None else rng.randint(MIN_BATCH_SIZE, MAX_BATCH_SIZE)
    LOGGER.info("Generating %s messages", count)
    return [crypto.encrypt_message(tag_message(generate_message(data, rng))) for _ in range(count)]


class BatchFactory:
    """Builds encoded message streams for the producer's periodic sends."""

    def __init__(
        self,
        data: ReferenceData,
        crypto: CryptoIntegrityLayer,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._data = data
        self._crypto = crypto
        self._rng = rng or random.Random()

    def __call__(self) -> tuple[str, int]:
        """Return `(stream, message_count)` for one new batch."""

        envelopes = generate_batch(self._data, self._crypto, self._rng)
        stream = encode_batch(envelopes)
        LOGGER.info(
            "Created message stream with %s messages, total length: %s characters",
            len(envelopes),
            len(stream),
        )
        return stream, len(envelopes)
