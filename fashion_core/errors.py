"""
Error taxonomy shared by every layer of the fashion trend service.

Each error carries a stable ``code`` so the HTTP layer (and any other caller)
can branch on the condition without parsing messages.
"""

from typing import Optional


class FashionCoreError(Exception):
    """Base class for all domain errors."""

    code: str = "internal_error"

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class DimensionMismatch(FashionCoreError):
    """Two vectors of unequal length were compared, or a stored vector has the wrong size."""

    code = "dimension_mismatch"

    def __init__(self, expected: int, actual: int, **context: object) -> None:
        super().__init__(
            f"Vector dimension mismatch: expected {expected}, got {actual}",
            expected=expected,
            actual=actual,
            **context,
        )
        self.expected = expected
        self.actual = actual


class ProviderFailure(FashionCoreError):
    """The external embedding/vision provider failed, timed out or returned malformed data."""

    code = "provider_failure"

    def __init__(self, message: str, image_hash: Optional[str] = None, **context: object) -> None:
        super().__init__(message, image_hash=image_hash, **context)
        self.image_hash = image_hash


class NoEmbedding(FashionCoreError):
    """The queried product has no usable embedding yet; the caller should create one first."""

    code = "no_embedding"

    def __init__(self, product_id: str) -> None:
        super().__init__(
            f"Product {product_id} has no embedding. Generate embeddings first.",
            product_id=product_id,
        )
        self.product_id = product_id


class ProductNotFound(FashionCoreError, LookupError):
    """No product exists with the requested id."""

    code = "product_not_found"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found", product_id=product_id)
        self.product_id = product_id


class InvalidInput(FashionCoreError, ValueError):
    """Input rejected before any computation took place."""

    code = "invalid_input"


class NotApparel(InvalidInput):
    """The vision model reported that the photo does not show a garment."""

    code = "not_apparel"


class ParseFailure(FashionCoreError):
    """An upstream model response could not be parsed into the expected shape."""

    code = "parse_failure"

    def __init__(self, message: str, raw_text: Optional[str] = None, **context: object) -> None:
        super().__init__(message, **context)
        self.raw_text = raw_text
