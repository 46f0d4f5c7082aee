"""Error taxonomy surfaced to API callers as {"code", "detail"}"""
from fastapi import Request
from fastapi.responses import JSONResponse


class AppError(Exception):
    code = "app_error"
    status_code = 400
    default_message = "No se pudo completar la operación"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# Validation: rejected before any external call, never retried

class ChangeValidationError(AppError):
    code = "validation_error"
    default_message = "La solicitud no es válida"


class SeatCountOutOfRange(ChangeValidationError):
    code = "seat_count_out_of_range"


class NoChangesToApply(ChangeValidationError):
    code = "no_changes"
    default_message = "No hay cambios para aplicar"


class InvalidChildSelection(ChangeValidationError):
    code = "invalid_child_selection"
    default_message = "Algunos hijos seleccionados no son válidos"


class SeatLimitExceeded(ChangeValidationError):
    code = "seat_limit_exceeded"


# Payment processor: local state is left untouched, the caller may resubmit

class ProcessorError(AppError):
    code = "processor_error"
    status_code = 502
    default_message = "Error al comunicarse con el sistema de pagos"


class QuoteUnavailable(ProcessorError):
    code = "quote_unavailable"
    default_message = "No se pudo calcular el cobro proporcional"


class ProcessorUpdateFailed(ProcessorError):
    code = "processor_update_failed"
    default_message = "No se pudo actualizar la suscripción"


class GenerationExhausted(AppError):
    code = "code_generation_exhausted"
    status_code = 503
    default_message = "No se pudieron generar suficientes códigos únicos"


class NoPendingChange(AppError):
    code = "no_pending_change"
    status_code = 404
    default_message = "No hay ningún cambio pendiente"


class MembershipNotFound(AppError):
    code = "no_membership"
    status_code = 404
    default_message = "No se encontró una suscripción activa"


class WebhookSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400
    default_message = "Firma de webhook inválida"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "detail": exc.message},
    )
