"""Classification of a generation as a chat reply or a canvas document."""

from enum import Enum
from typing import Optional

import structlog

from ..domain.models import PartialStructuredValue

logger = structlog.get_logger()


class ResponseKind(str, Enum):
    GENERAL = "general"
    DOCUMENT = "document"
    UNDETERMINED = "undetermined"


def classify(value: Optional[PartialStructuredValue]) -> ResponseKind:
    """Classify a single value without regard to history.

    The body wins whenever it is populated; the producer only fills it for
    explicit document requests.
    """
    if value is None:
        return ResponseKind.UNDETERMINED
    if value.body:
        return ResponseKind.DOCUMENT
    if value.general:
        return ResponseKind.GENERAL
    return ResponseKind.UNDETERMINED


class ResponseClassifier:
    """Per-generation classifier.

    The kind only moves forward: undetermined to either kind, and general to
    document once a body shows up. A document never goes back.
    """

    def __init__(self) -> None:
        self.kind = ResponseKind.UNDETERMINED

    @property
    def decided(self) -> bool:
        return self.kind is not ResponseKind.UNDETERMINED

    def classify(self, value: Optional[PartialStructuredValue]) -> ResponseKind:
        observed = classify(value)
        if observed is ResponseKind.DOCUMENT and self.kind is ResponseKind.GENERAL:
            logger.info("classification_promoted", source=self.kind.value, target=observed.value)
            self.kind = observed
        elif not self.decided:
            self.kind = observed
        return self.kind
