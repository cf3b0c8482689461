import pytest

from certdesk.tickets.state import TicketStateMachine, TicketStatus


def test_ticket_state_machine_allows_expected_transitions():
    assert TicketStateMachine.can_transition(TicketStatus.GERAL, TicketStatus.EM_OPERACAO)
    assert TicketStateMachine.can_transition(TicketStatus.GERAL, TicketStatus.EM_ATENDIMENTO)
    assert TicketStateMachine.can_transition(TicketStatus.EM_OPERACAO, TicketStatus.EM_ATENDIMENTO)
    assert TicketStateMachine.can_transition(TicketStatus.EM_ATENDIMENTO, TicketStatus.AGUARDANDO_INFO)
    assert TicketStateMachine.can_transition(TicketStatus.AGUARDANDO_INFO, TicketStatus.EM_ATENDIMENTO)
    assert TicketStateMachine.can_transition(TicketStatus.FINANCEIRO, TicketStatus.CONCLUIDO)


def test_same_status_notes_are_allowed_until_the_ticket_is_concluded():
    assert TicketStateMachine.can_transition(TicketStatus.EM_ATENDIMENTO, TicketStatus.EM_ATENDIMENTO)
    assert not TicketStateMachine.can_transition(TicketStatus.CONCLUIDO, TicketStatus.CONCLUIDO)


def test_ticket_state_machine_blocks_invalid_transitions():
    assert TicketStateMachine.is_terminal(TicketStatus.CONCLUIDO)
    assert not TicketStateMachine.can_transition(TicketStatus.CONCLUIDO, TicketStatus.GERAL)
    assert not TicketStateMachine.can_transition(TicketStatus.EM_ATENDIMENTO, TicketStatus.GERAL)
    with pytest.raises(ValueError):
        TicketStateMachine.assert_transition(TicketStatus.CONCLUIDO, TicketStatus.EM_ATENDIMENTO)
