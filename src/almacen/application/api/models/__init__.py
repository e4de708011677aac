from almacen.application.api.models.admin import AlertToggleRequest, InvalidatePatternsRequest

__all__ = ["AlertToggleRequest", "InvalidatePatternsRequest"]
