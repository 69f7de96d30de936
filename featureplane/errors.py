"""Exception taxonomy raised by the reconciliation and materialization core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:  # pragma: no cover
    from .definitions import ObjectRef
    from .materialization import MaterializationReport

__all__ = [
    "ConcurrentModificationError",
    "FeaturePlaneError",
    "InconsistencyError",
    "InvalidRangeError",
    "MaterializationError",
    "ObjectNotFoundError",
    "ProviderError",
    "ValidationError",
]


class FeaturePlaneError(RuntimeError):
    """Base class for all control-plane failures."""

    def __init__(self, message: str, *, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.detail = dict(detail or {})


class ValidationError(FeaturePlaneError):
    """Raised when declared definitions are inconsistent.

    ``ref`` names the offending object and ``rule`` the violated check. When the
    violation involves a second object (a missing entity, for example) it is
    exposed as ``related``.
    """

    def __init__(
        self,
        message: str,
        *,
        ref: "ObjectRef | None" = None,
        rule: str | None = None,
        related: "ObjectRef | None" = None,
    ) -> None:
        detail: dict[str, Any] = {}
        if ref is not None:
            detail["object"] = str(ref)
        if rule is not None:
            detail["rule"] = rule
        if related is not None:
            detail["related"] = str(related)
        super().__init__(message, detail=detail)
        self.ref = ref
        self.rule = rule
        self.related = related


class ObjectNotFoundError(ValidationError):
    """Raised when a named registry object does not exist."""


class ConcurrentModificationError(FeaturePlaneError):
    """Raised when a registry commit lost a race with another writer."""


class InvalidRangeError(FeaturePlaneError):
    """Raised for malformed materialization windows."""


class ProviderError(FeaturePlaneError):
    """Raised when the infra provider or batch engine fails."""


class InconsistencyError(FeaturePlaneError):
    """Raised when infrastructure changed but the registry commit failed.

    Physical resources and registry metadata have diverged and need operator
    attention; re-running the same apply converges them.
    """


class MaterializationError(FeaturePlaneError):
    """Raised when one or more feature views failed to materialize."""

    def __init__(self, report: "MaterializationReport") -> None:
        names = ", ".join(sorted(report.failed))
        super().__init__(
            f"Materialization failed for feature views: {names}",
            detail={name: str(error) for name, error in report.failed.items()},
        )
        self.report = report

    @property
    def failures(self) -> Mapping[str, BaseException]:
        return self.report.failed
