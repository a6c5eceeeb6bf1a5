from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class LabelPredicate:
    """Admission filter applied to watch events before they are queued.

    Admits an object iff its ``key`` label equals ``value``.  Objects missing
    the label are rejected exactly like mismatching ones.  Rejections are
    silent; the reconciler logs its own diagnostics if it later observes a
    mismatching object directly.
    """

    key: str
    value: str

    def admit(self, obj: Any) -> bool:
        labels = getattr(obj, "labels", None)
        if not isinstance(labels, Mapping):
            return False
        return labels.get(self.key) == self.value
