"""Exception hierarchy for the embedder runtime.

Every error raised by the catalog, provisioning, embedders and the manager
derives from ``EmbedderError`` so the API layer can report it per request.
"""

from typing import Iterable, Optional


class EmbedderError(Exception):
    """Base class for embedder runtime failures."""
    pass


class UnknownModelError(EmbedderError):
    """Model name is not present in the asset catalog."""

    def __init__(self, model_class: str, model_name: str, available: Iterable[str] = ()):
        self.model_class = model_class
        self.model_name = model_name
        self.available = sorted(available)
        super().__init__(
            f"{model_class} model: {model_name} was not found; "
            f"available models: {', '.join(self.available) or 'none'}"
        )


class ProvisioningError(EmbedderError):
    """Asset download or integrity check failed."""
    pass


class SessionConstructionError(EmbedderError):
    """Inference backend rejected the model file or its configuration."""
    pass


class TokenizationError(EmbedderError):
    """An input string could not be tokenized."""

    def __init__(self, index: int, reason: str):
        self.index = index
        super().__init__(f"unable to tokenize the input at idx: {index} | err: {reason}")


class PreprocessingError(EmbedderError):
    """An image reference could not be fetched, decoded or resized."""

    def __init__(self, index: int, reference: str, reason: str):
        self.index = index
        self.reference = reference
        super().__init__(f"unable to preprocess image at idx: {index} ({reference}) | err: {reason}")


class InferenceError(EmbedderError):
    """The inference backend failed while running a batch."""
    pass


class PayloadKindMismatchError(EmbedderError):
    """Request payload is incompatible with the target model."""
    pass


class UnsupportedPayloadError(PayloadKindMismatchError):
    """Payload kind is recognized but not implemented by the embedder."""
    pass


class InvalidRequestError(EmbedderError):
    """Request is structurally invalid (e.g. mismatched pair lengths)."""
    pass


class ModelNotRegisteredError(EmbedderError):
    """No embedder has been successfully initialized under the identifier."""

    def __init__(self, model_class: str, model_name: str, detail: Optional[str] = None):
        self.model_class = model_class
        self.model_name = model_name
        message = f"model not found: {model_class}/{model_name}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InternalContractViolation(EmbedderError):
    """A request reached an embedder that should never have received it."""
    pass
