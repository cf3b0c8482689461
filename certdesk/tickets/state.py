from __future__ import annotations

from enum import Enum


class TicketStatus(str, Enum):
    """Supported states for a certificate request's lifecycle."""

    GERAL = "GERAL"
    EM_OPERACAO = "EM_OPERACAO"
    EM_ATENDIMENTO = "EM_ATENDIMENTO"
    AGUARDANDO_INFO = "AGUARDANDO_INFO"
    FINANCEIRO = "FINANCEIRO"
    CONCLUIDO = "CONCLUIDO"


class TicketStateMachine:
    """Validate ticket lifecycle transitions."""

    _TRANSITIONS: dict[TicketStatus, set[TicketStatus]] = {
        TicketStatus.GERAL: {TicketStatus.EM_OPERACAO, TicketStatus.EM_ATENDIMENTO, TicketStatus.CONCLUIDO},
        TicketStatus.EM_OPERACAO: {TicketStatus.EM_ATENDIMENTO, TicketStatus.CONCLUIDO},
        TicketStatus.EM_ATENDIMENTO: {
            TicketStatus.AGUARDANDO_INFO,
            TicketStatus.FINANCEIRO,
            TicketStatus.CONCLUIDO,
        },
        TicketStatus.AGUARDANDO_INFO: {TicketStatus.EM_ATENDIMENTO, TicketStatus.CONCLUIDO},
        TicketStatus.FINANCEIRO: {TicketStatus.EM_ATENDIMENTO, TicketStatus.CONCLUIDO},
        TicketStatus.CONCLUIDO: set(),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.GERAL

    @classmethod
    def is_terminal(cls, status: TicketStatus) -> bool:
        return not cls._TRANSITIONS.get(status)

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        # Same-status entries are notes; a terminal ticket takes none.
        if current == new:
            return not cls.is_terminal(current)
        return new in cls._TRANSITIONS.get(current, set())

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> None:
        if not cls.can_transition(current, new):
            raise ValueError(f"Invalid ticket status transition: {current.value} -> {new.value}")
