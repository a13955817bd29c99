# reviewflow/errors.py
from __future__ import annotations


class PipelineError(Exception):
    """Base de todos los errores del pipeline trigger -> envío."""


class InvalidEvent(PipelineError):
    """Trigger mal formado o de tipo desconocido. Se rechaza en la entrada, no se reintenta."""


class TenantMismatch(InvalidEvent):
    """El cliente (o el negocio) no pertenece al principal que llama."""


class NoMatchingTemplate(PipelineError):
    """No es un error real: el negocio no tiene automatización para este evento."""


class SchedulingConflict(PipelineError):
    """Trigger duplicado dentro de la ventana de de-duplicación."""

    def __init__(self, existing_job_id: int, review_request_id: int | None = None):
        super().__init__(f"duplicate trigger, existing job {existing_job_id}")
        self.existing_job_id = existing_job_id
        self.review_request_id = review_request_id


class ClaimConflict(PipelineError):
    """Otro dispatcher ganó el claim optimista."""

    def __init__(self, job_id: int):
        super().__init__(f"job {job_id} already claimed")
        self.job_id = job_id


class AdapterFailure(PipelineError):
    """Fallo de envío en un canal (timeout, rechazo del proveedor, destino inválido)."""

    def __init__(self, channel: str, reason: str, *, retryable: bool = False):
        super().__init__(f"{channel}: {reason}")
        self.channel = channel
        self.reason = reason
        self.retryable = retryable


class DanglingReferenceError(PipelineError):
    """Job sin ReviewRequest detrás. No debería ocurrir nunca."""
