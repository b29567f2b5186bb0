"""Root of the torchstiff error hierarchy."""


class IntegrationError(Exception):
    """Raised when advancing a differential equation cannot continue."""

    pass
