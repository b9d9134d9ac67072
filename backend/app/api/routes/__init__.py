# API Routes Module
from app.api.routes import (
    iap_validation,
    reconciliation,
)

__all__ = [
    "iap_validation",
    "reconciliation",
]
