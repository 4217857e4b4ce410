"""Tests for the conversation state machine.

Drives whole dialogues through ConversationStateMachine with an in-process
catalog, a scripted interpreter and the SQL memory store.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from meallog.db.models import SessionLog
from meallog.errors import (
    AuthenticationError,
    CatalogWriteError,
    InterpretationError,
    MemoryUnavailableError,
)
from meallog.orchestrator import messages
from meallog.orchestrator.models import CatalogCredential, ClarificationType, Food, Measure
from meallog.orchestrator.state_machine import ConversationStateMachine
from meallog.services.memory_service import NullMemoryService
from meallog.services.session_log_service import SessionLogService
from meallog.services.session_registry import ConversationState, SessionRegistry
from tests.helpers import (
    FakeCatalog,
    ScriptedInterpreter,
    clarification_output,
    make_food,
    meal_output,
)

CHAT = "chat-1"
T0 = datetime(2026, 10, 17, 8, 0, tzinfo=timezone.utc)
LOGIN = "/login ana@example.com s3cret"

pytestmark = pytest.mark.integration


class Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def egg() -> Food:
    return make_food(1, "Egg", [Measure(id=5, name="large", value=50.0)])


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def catalog():
    return FakeCatalog(
        tabs={"COMMON_FOODS": [egg(), make_food(2, "White Rice")]},
    )


@pytest.fixture
def interpreter():
    return ScriptedInterpreter()


@pytest.fixture
def machine(catalog, interpreter, memory, session_factory, clock):
    return ConversationStateMachine(
        SessionRegistry(),
        catalog,
        interpreter,
        memory=memory,
        session_log=SessionLogService(session_factory),
        clock=clock,
    )


def conversation_of(machine):
    return machine.registry.get(CHAT).conversation


async def start(machine):
    await machine.handle_message(CHAT, LOGIN)
    return await machine.handle_message(CHAT, "/start")


# ============================================================================
# Login and commands
# ============================================================================


class TestLoginAndCommands:
    @pytest.mark.asyncio
    async def test_start_requires_login(self, machine):
        replies = await machine.handle_message(CHAT, "/start")
        assert replies == [messages.LOGIN_REQUIRED]

    @pytest.mark.asyncio
    async def test_free_text_without_login(self, machine):
        replies = await machine.handle_message(CHAT, "2 huevos")
        assert replies == [messages.LOGIN_REQUIRED]

    @pytest.mark.asyncio
    async def test_login_stores_credential(self, machine):
        replies = await machine.handle_message(CHAT, LOGIN)
        assert replies == [messages.LOGIN_SUCCESS]
        assert machine.registry.get(CHAT).credential.user_id == 1001

    @pytest.mark.asyncio
    async def test_keyword_login(self, machine):
        replies = await machine.handle_message(CHAT, "login ana@example.com s3cret")
        assert replies == [messages.LOGIN_SUCCESS]

    @pytest.mark.asyncio
    async def test_login_rejected(self, machine, catalog):
        catalog.login_result = AuthenticationError("ana@example.com")
        replies = await machine.handle_message(CHAT, LOGIN)
        assert replies == [messages.LOGIN_FAILED]
        assert not machine.registry.get(CHAT).is_authenticated

    @pytest.mark.asyncio
    async def test_login_is_saved(self, machine, memory):
        await machine.handle_message(CHAT, LOGIN)
        [saved] = memory.list_active_sessions()
        assert saved.chat_id == CHAT
        assert saved.email == "ana@example.com"
        assert saved.to_credential() == CatalogCredential(user_id=1001, token="tok-abc")

    @pytest.mark.asyncio
    async def test_login_survives_store_failure(self, machine, memory, monkeypatch):
        def broken(*args, **kwargs):
            raise MemoryUnavailableError("disk full")

        monkeypatch.setattr(memory, "save_session", broken)
        replies = await machine.handle_message(CHAT, LOGIN)
        assert replies == [messages.LOGIN_SUCCESS]
        assert machine.registry.get(CHAT).is_authenticated

    @pytest.mark.asyncio
    async def test_saved_login_restored_on_startup(self, catalog, interpreter, memory, clock):
        memory.save_session(CHAT, CatalogCredential(user_id=1001, token="tok-abc"), "a@x.com")
        machine = ConversationStateMachine(
            SessionRegistry(), catalog, interpreter, memory=memory, clock=clock
        )

        assert machine.restore_sessions() == 1
        assert machine.registry.get(CHAT).credential.token == "tok-abc"
        replies = await machine.handle_message(CHAT, "/start")
        assert replies == [messages.NEW_SESSION_STARTED]

    def test_restore_with_store_failure(self, catalog, interpreter, clock):
        class BrokenMemory(NullMemoryService):
            def list_active_sessions(self):
                raise MemoryUnavailableError("disk I/O error")

        machine = ConversationStateMachine(
            SessionRegistry(), catalog, interpreter, memory=BrokenMemory(), clock=clock
        )
        assert machine.restore_sessions() == 0
        assert machine.registry.get(CHAT) is None

    @pytest.mark.asyncio
    async def test_logout_forgets_chat(self, machine, memory, catalog, interpreter, clock):
        await start(machine)

        replies = await machine.handle_message(CHAT, "/logout")

        assert replies == [messages.LOGOUT_SUCCESS]
        assert machine.registry.get(CHAT) is None
        assert memory.list_active_sessions() == []
        assert await machine.handle_message(CHAT, "/start") == [messages.LOGIN_REQUIRED]

        restarted = ConversationStateMachine(
            SessionRegistry(), catalog, interpreter, memory=memory, clock=clock
        )
        assert restarted.restore_sessions() == 0

    @pytest.mark.asyncio
    async def test_logout_without_login(self, machine):
        assert await machine.handle_message(CHAT, "/salir") == [messages.NOT_LOGGED_IN]

    @pytest.mark.asyncio
    async def test_login_bad_format(self, machine):
        replies = await machine.handle_message(CHAT, "/login ana@example.com")
        assert replies == [messages.INVALID_LOGIN_FORMAT]

    @pytest.mark.asyncio
    async def test_text_after_login_without_start(self, machine):
        await machine.handle_message(CHAT, LOGIN)
        replies = await machine.handle_message(CHAT, "2 huevos")
        assert replies == [messages.USE_START_TO_BEGIN]

    @pytest.mark.asyncio
    async def test_start_opens_conversation(self, machine):
        replies = await start(machine)
        assert replies == [messages.NEW_SESSION_STARTED]
        assert conversation_of(machine).state == ConversationState.AWAITING_MEAL_DESCRIPTION

    @pytest.mark.asyncio
    async def test_spanish_command_alias(self, machine):
        await machine.handle_message(CHAT, LOGIN)
        replies = await machine.handle_message(CHAT, "/iniciar")
        assert replies == [messages.NEW_SESSION_STARTED]

    @pytest.mark.asyncio
    async def test_second_start_refused(self, machine):
        await start(machine)
        replies = await machine.handle_message(CHAT, "/start")
        assert replies == [messages.SESSION_ALREADY_ACTIVE]

    @pytest.mark.asyncio
    async def test_cancel(self, machine):
        await start(machine)
        replies = await machine.handle_message(CHAT, "/cancel")
        assert replies == [messages.SESSION_CANCELLED]
        assert conversation_of(machine) is None

    @pytest.mark.asyncio
    async def test_cancel_without_session(self, machine):
        await machine.handle_message(CHAT, LOGIN)
        replies = await machine.handle_message(CHAT, "/cancel")
        assert replies == [messages.NO_ACTIVE_SESSION]

    @pytest.mark.asyncio
    async def test_save_without_session(self, machine):
        await machine.handle_message(CHAT, LOGIN)
        replies = await machine.handle_message(CHAT, "/save")
        assert replies == [messages.NO_SESSION_TO_SAVE]

    @pytest.mark.asyncio
    async def test_save_before_confirmation(self, machine):
        await start(machine)
        replies = await machine.handle_message(CHAT, "/save")
        assert replies == [messages.NO_PENDING_CHANGES]

    @pytest.mark.asyncio
    async def test_search_command(self, machine):
        await machine.handle_message(CHAT, LOGIN)
        replies = await machine.handle_message(CHAT, "/search egg")
        assert len(replies) == 1
        assert 'Resultados para "egg"' in replies[0]
        assert replies[0].index("Egg") < replies[0].index("White Rice")

    @pytest.mark.asyncio
    async def test_search_without_query(self, machine):
        await machine.handle_message(CHAT, LOGIN)
        replies = await machine.handle_message(CHAT, "/search")
        assert replies == [messages.SEARCH_USAGE]

    @pytest.mark.asyncio
    async def test_search_without_results(self, machine, catalog):
        catalog.tabs = {}
        await machine.handle_message(CHAT, LOGIN)
        replies = await machine.handle_message(CHAT, "/buscar mango")
        assert replies == [messages.format_no_results("mango")]

    @pytest.mark.asyncio
    async def test_continue_outside_photo_flow(self, machine):
        await start(machine)
        replies = await machine.handle_message(CHAT, "/continue")
        assert replies == [messages.CONTINUE_ONLY_AFTER_PHOTO]


# ============================================================================
# Meal logging
# ============================================================================


class TestMealLogging:
    @pytest.mark.asyncio
    async def test_description_to_confirmation(self, machine, interpreter):
        await start(machine)
        interpreter.queue(meal_output((2, "large", "Egg"), (150, "grams", "Rice")))

        replies = await machine.handle_message(CHAT, "2 huevos grandes y 150g de arroz")

        assert len(replies) == 1
        assert "<b>Hora:</b> 8:30 AM" in replies[0]
        assert "<b>Tipo:</b> BREAKFAST" in replies[0]
        assert "1. 2 large de <b>Egg</b>" in replies[0]
        assert "<b>White Rice</b>" in replies[0]
        conversation = conversation_of(machine)
        assert conversation.state == ConversationState.AWAITING_CONFIRMATION
        assert [v.food_id for v in conversation.validated_foods] == [1, 2]
        assert interpreter.calls[0][0] == (
            "Meal description: 2 huevos grandes y 150g de arroz"
        )

    @pytest.mark.asyncio
    async def test_save_writes_servings(self, machine, interpreter, catalog, session_factory):
        await start(machine)
        interpreter.queue(meal_output((2, "large", "Egg")))
        await machine.handle_message(CHAT, "2 huevos grandes")

        replies = await machine.handle_message(CHAT, "/save")

        assert replies == [messages.SAVE_SUCCESS]
        assert conversation_of(machine) is None
        [servings] = catalog.written
        assert servings[0]["foodId"] == 1
        assert servings[0]["measureId"] == 5
        assert servings[0]["grams"] == 100.0
        assert servings[0]["order"] == 65537

        with session_factory() as db:
            row = db.execute(select(SessionLog)).scalar_one()
        assert row.status == "completed"
        assert row.items_logged == 1
        assert row.original_description == "2 huevos grandes"
        assert any(e["type"] == "interpreter_call" for e in row.event_list)

    @pytest.mark.asyncio
    async def test_save_failure_keeps_confirmation(self, machine, interpreter, catalog):
        await start(machine)
        interpreter.queue(meal_output((2, "large", "Egg")))
        await machine.handle_message(CHAT, "2 huevos grandes")
        catalog.write_error = CatalogWriteError("multi_add_serving", "rejected")

        replies = await machine.handle_message(CHAT, "/save")

        assert replies == [messages.SAVE_RETRY_ERROR]
        assert conversation_of(machine).state == ConversationState.AWAITING_CONFIRMATION

        catalog.write_error = None
        replies = await machine.handle_message(CHAT, "/guardar")
        assert replies == [messages.SAVE_SUCCESS]

    @pytest.mark.asyncio
    async def test_interpretation_error_returns_to_description(self, machine, interpreter):
        await start(machine)
        interpreter.queue(InterpretationError("No se pudo procesar el mensaje."))

        replies = await machine.handle_message(CHAT, "asdf")

        assert replies == [
            messages.format_description_error("No se pudo procesar el mensaje.")
        ]
        assert conversation_of(machine).state == ConversationState.AWAITING_MEAL_DESCRIPTION

    @pytest.mark.asyncio
    async def test_no_items_is_interpretation_error(self, machine, interpreter):
        await start(machine)
        interpreter.queue(meal_output())

        replies = await machine.handle_message(CHAT, "hola")

        assert replies == [messages.format_description_error(messages.NO_FOOD_ITEMS)]

    @pytest.mark.asyncio
    async def test_correction_reinterprets_history(self, machine, interpreter):
        await start(machine)
        interpreter.queue(
            meal_output((2, "large", "Egg")),
            meal_output((3, "large", "Egg")),
        )
        await machine.handle_message(CHAT, "2 huevos grandes")

        replies = await machine.handle_message(CHAT, "eran 3 huevos")

        assert replies[0] == messages.PROCESSING_CHANGES
        assert "1. 3 large de <b>Egg</b>" in replies[1]
        assert "\nAdditional info: eran 3 huevos" in interpreter.calls[1][0]


# ============================================================================
# Clarifications
# ============================================================================


class TestClarifications:
    @pytest.mark.asyncio
    async def test_single_question_shown_verbatim(self, machine, interpreter, memory):
        await start(machine)
        interpreter.queue(
            clarification_output(
                ("MISSING_SIZE", "Egg", "¿De qué tamaño eran los huevos?"),
                items=[(2, "", "Egg")],
            ),
            meal_output((2, "large", "Egg")),
        )

        replies = await machine.handle_message(CHAT, "2 huevos")

        assert replies == [
            messages.NEEDS_CLARIFICATION_PREFIX + "¿De qué tamaño eran los huevos?"
        ]
        conversation = conversation_of(machine)
        assert conversation.state == ConversationState.AWAITING_CLARIFICATION
        assert conversation.pending_clarifications[0].type == ClarificationType.MISSING_SIZE

        replies = await machine.handle_message(CHAT, "grandes")

        assert "1. 2 large de <b>Egg</b>" in replies[0]
        assert (
            "Clarification question: ¿De qué tamaño eran los huevos?\n"
            "User answered: grandes"
        ) in interpreter.calls[1][0]
        pref = memory.list_clarification_preferences(CHAT, confirmed_only=False)
        assert [(p.food_term, p.default_answer) for p in pref] == [("egg", "grandes")]

    @pytest.mark.asyncio
    async def test_ambiguous_reply_asks_again(self, machine, interpreter, memory):
        await start(machine)
        interpreter.queue(
            clarification_output(
                ("MissingSize", "Egg", "¿Tamaño de los huevos?"),
                ("MissingWeight", "Rice", "¿Cuánto arroz?"),
            )
        )
        await machine.handle_message(CHAT, "huevos y arroz")

        replies = await machine.handle_message(CHAT, "no sé")

        assert replies == [
            f"{messages.CLARIFICATION_NOT_UNDERSTOOD}\n\n"
            "1. ¿Tamaño de los huevos?\n2. ¿Cuánto arroz?"
        ]
        assert len(interpreter.calls) == 1
        assert conversation_of(machine).state == ConversationState.AWAITING_CLARIFICATION
        assert memory.list_clarification_preferences(CHAT, confirmed_only=False) == []

    @pytest.mark.asyncio
    async def test_follow_up_question_uses_still_needs_prefix(self, machine, interpreter):
        await start(machine)
        interpreter.queue(
            clarification_output(("MissingSize", "Egg", "¿Tamaño?")),
            clarification_output(("MissingWeight", "Rice", "¿Cuánto arroz?")),
        )
        await machine.handle_message(CHAT, "huevos y arroz")

        replies = await machine.handle_message(CHAT, "grandes")

        assert replies == [messages.STILL_NEEDS_CLARIFICATION + "¿Cuánto arroz?"]

    @pytest.mark.asyncio
    async def test_one_miss_raises_one_not_found(self, machine, interpreter):
        await start(machine)
        interpreter.queue(meal_output((2, "large", "Egg"), (1, "unit", "Xyzzy fruit")))

        replies = await machine.handle_message(CHAT, "2 huevos y una xyzzy")

        assert replies == [messages.format_not_found_items(["Xyzzy fruit"])]
        conversation = conversation_of(machine)
        assert conversation.state == ConversationState.AWAITING_CLARIFICATION
        [pending] = conversation.pending_clarifications
        assert pending.type == ClarificationType.FOOD_NOT_FOUND
        assert pending.item_name == "Xyzzy fruit"
        assert [v.food_id for v in conversation.validated_foods] == [1]

    @pytest.mark.asyncio
    async def test_confirmed_preference_applied_automatically(
        self, machine, interpreter, memory
    ):
        for _ in range(2):
            memory.record_clarification_answer(CHAT, "Egg", "MissingSize", "grande")
        await start(machine)
        interpreter.queue(
            clarification_output(("MissingSize", "Egg", "¿De qué tamaño?")),
            meal_output((2, "large", "Egg")),
        )

        replies = await machine.handle_message(CHAT, "2 huevos")

        assert replies[0] == messages.format_auto_applied_preferences(["egg -> grande"])
        assert "1. 2 large de <b>Egg</b>" in replies[1]
        assert len(interpreter.calls) == 2
        assert (
            "Clarification question: ¿De qué tamaño?\nUser answered: grande"
            in interpreter.calls[1][0]
        )
        assert 'When "egg"' in interpreter.calls[0][1]


# ============================================================================
# Aliases and memory confirmation
# ============================================================================


class TestAliases:
    @pytest.fixture
    def catalog(self):
        return FakeCatalog(
            tabs={"COMMON_FOODS": [make_food(7, "Beef, ground, 85% lean")]},
            foods={42: make_food(42, "Chicken Breast, Raw")},
        )

    @pytest.mark.asyncio
    async def test_save_offers_learnings_and_stores_them(
        self, machine, interpreter, memory
    ):
        await start(machine)
        interpreter.queue(meal_output((200, "grams", "Ground beef"), category="LUNCH"))
        await machine.handle_message(CHAT, "200g de carne molida")

        replies = await machine.handle_message(CHAT, "/save")

        assert "Ground beef" in replies[0]
        assert "<b>Beef, ground, 85% lean</b>" in replies[0]
        assert conversation_of(machine).state == ConversationState.AWAITING_MEMORY_CONFIRMATION

        replies = await machine.handle_message(CHAT, "si")

        assert replies == [messages.format_preferences_saved(1)]
        assert conversation_of(machine) is None
        alias = memory.find_alias(CHAT, "ground beef")
        assert alias.resolved_food_id == 7
        assert alias.source_tab == "COMMON_FOODS"

    @pytest.mark.asyncio
    async def test_declining_learnings(self, machine, interpreter, memory):
        await start(machine)
        interpreter.queue(meal_output((200, "grams", "Ground beef")))
        await machine.handle_message(CHAT, "200g de carne molida")
        await machine.handle_message(CHAT, "/save")

        replies = await machine.handle_message(CHAT, "no")

        assert replies == [messages.NO_PREFERENCES_SAVED]
        assert memory.list_aliases(CHAT) == []

    @pytest.mark.asyncio
    async def test_invalid_memory_reply(self, machine, interpreter):
        await start(machine)
        interpreter.queue(meal_output((200, "grams", "Ground beef")))
        await machine.handle_message(CHAT, "200g de carne molida")
        await machine.handle_message(CHAT, "/save")

        replies = await machine.handle_message(CHAT, "quizás")

        assert replies == [messages.INVALID_MEMORY_RESPONSE]
        assert conversation_of(machine).state == ConversationState.AWAITING_MEMORY_CONFIRMATION

    @pytest.mark.asyncio
    async def test_known_alias_skips_catalog_search(
        self, machine, interpreter, catalog, memory
    ):
        memory.save_alias(CHAT, "pollo", "Chicken Breast, Raw", 42, "CUSTOM")
        await start(machine)
        interpreter.queue(meal_output((200, "grams", "Grilled chicken breast")))

        replies = await machine.handle_message(CHAT, "200g de pollo a la plancha")

        assert interpreter.calls[0][0] == (
            "Meal description: 200g de Chicken Breast, Raw a la plancha"
        )
        assert catalog.find_calls == []
        assert "<b>Chicken Breast, Raw</b> 🧠" in replies[0]
        [item] = conversation_of(machine).validated_foods
        assert item.food_id == 42
        assert item.was_resolved_from_alias
        assert memory.find_alias(CHAT, "pollo").use_count == 2

        replies = await machine.handle_message(CHAT, "/save")
        assert replies == [messages.SAVE_SUCCESS]


# ============================================================================
# Alternatives
# ============================================================================


class TestAlternatives:
    @pytest.fixture
    def catalog(self):
        return FakeCatalog(
            tabs={"COMMON_FOODS": [egg(), make_food(3, "Egg white")]},
        )

    async def confirm_eggs(self, machine, interpreter):
        await start(machine)
        interpreter.queue(meal_output((2, "large", "Egg")))
        await machine.handle_message(CHAT, "2 huevos grandes")

    @pytest.mark.asyncio
    async def test_number_lists_alternatives(self, machine, interpreter):
        await self.confirm_eggs(machine, interpreter)

        replies = await machine.handle_message(CHAT, "1")

        assert 'Alternativas para "Egg"' in replies[0]
        assert "1. Egg <i>[COMMON_FOODS]</i> ✓" in replies[0]
        assert "2. Egg white <i>[COMMON_FOODS]</i>" in replies[0]
        assert (
            conversation_of(machine).state
            == ConversationState.AWAITING_FOOD_SEARCH_SELECTION
        )

    @pytest.mark.asyncio
    async def test_selecting_alternative_replaces_item(self, machine, interpreter):
        await self.confirm_eggs(machine, interpreter)
        await machine.handle_message(CHAT, "1")

        replies = await machine.handle_message(CHAT, "2")

        assert "<b>Egg white</b>" in replies[0]
        conversation = conversation_of(machine)
        assert conversation.state == ConversationState.AWAITING_CONFIRMATION
        assert conversation.validated_foods[0].food_id == 3
        assert conversation.search_results == []

    @pytest.mark.asyncio
    async def test_zero_keeps_current(self, machine, interpreter):
        await self.confirm_eggs(machine, interpreter)
        await machine.handle_message(CHAT, "1")

        replies = await machine.handle_message(CHAT, "0")

        assert "1. 2 large de <b>Egg</b>" in replies[0]
        assert conversation_of(machine).validated_foods[0].food_id == 1

    @pytest.mark.asyncio
    async def test_out_of_range_item_number(self, machine, interpreter):
        await self.confirm_eggs(machine, interpreter)
        replies = await machine.handle_message(CHAT, "5")
        assert replies == [messages.INVALID_NUMBER]


# ============================================================================
# Photo transcripts
# ============================================================================


class TestPhotoTranscripts:
    @pytest.mark.asyncio
    async def test_photo_requires_login(self, machine):
        replies = await machine.handle_photo_text(CHAT, "2 huevos")
        assert replies == [messages.LOGIN_REQUIRED]

    @pytest.mark.asyncio
    async def test_empty_transcript(self, machine):
        await machine.handle_message(CHAT, LOGIN)
        replies = await machine.handle_photo_text(CHAT, "   ")
        assert replies == [messages.NO_TEXT_DETECTED]

    @pytest.mark.asyncio
    async def test_transcript_then_continue(self, machine, interpreter):
        await machine.handle_message(CHAT, LOGIN)

        replies = await machine.handle_photo_text(CHAT, "2 huevos grandes")

        assert replies == [
            "<pre>2 huevos grandes</pre>",
            messages.TEXT_DETECTED_INSTRUCTIONS,
        ]
        assert conversation_of(machine).state == ConversationState.AWAITING_OCR_CORRECTION

        interpreter.queue(meal_output((2, "large", "Egg")))
        replies = await machine.handle_message(CHAT, "/continue")

        assert interpreter.calls[0][0] == "Meal description: 2 huevos grandes"
        assert conversation_of(machine).state == ConversationState.AWAITING_CONFIRMATION
        assert conversation_of(machine).ocr_text is None

    @pytest.mark.asyncio
    async def test_transcript_with_correction(self, machine, interpreter):
        await machine.handle_message(CHAT, LOGIN)
        await machine.handle_photo_text(CHAT, "2 huevos")
        interpreter.queue(meal_output((3, "large", "Egg")))

        await machine.handle_message(CHAT, "eran 3 huevos")

        assert interpreter.calls[0][0] == (
            "Meal description: 2 huevos\n\nCORRECCIONES DEL USUARIO: eran 3 huevos"
        )

    @pytest.mark.asyncio
    async def test_photo_refused_mid_confirmation(self, machine, interpreter):
        await start(machine)
        interpreter.queue(meal_output((2, "large", "Egg")))
        await machine.handle_message(CHAT, "2 huevos grandes")

        replies = await machine.handle_photo_text(CHAT, "otra comida")

        assert replies == [messages.SESSION_ALREADY_ACTIVE]


# ============================================================================
# Preferences wizard
# ============================================================================


class TestPreferencesWizard:
    @pytest.fixture
    def catalog(self):
        return FakeCatalog(tabs={"CUSTOM": [make_food(77, "Whey Protein Shake")]})

    @pytest.mark.asyncio
    async def test_create_alias(self, machine, memory):
        await machine.handle_message(CHAT, LOGIN)

        replies = await machine.handle_message(CHAT, "/preferences")
        assert "No tienes alias guardados" in replies[0]

        replies = await machine.handle_message(CHAT, "1")
        assert replies == [messages.CREATE_ALIAS_PROMPT]

        replies = await machine.handle_message(CHAT, "mi batido")
        assert replies == [messages.format_term_saved("mi batido")]

        replies = await machine.handle_message(CHAT, "whey")
        assert "1. Whey Protein Shake <i>[CUSTOM]</i>" in replies[0]

        replies = await machine.handle_message(CHAT, "1")
        assert replies == [messages.format_alias_saved("mi batido", "Whey Protein Shake")]
        assert conversation_of(machine) is None
        alias = memory.find_alias(CHAT, "Mi Batido")
        assert alias.resolved_food_id == 77
        assert alias.is_manual

    @pytest.mark.asyncio
    async def test_delete_alias(self, machine, memory):
        memory.save_alias(CHAT, "pollo", "Chicken Breast, Raw", 42, "CUSTOM")
        await machine.handle_message(CHAT, LOGIN)
        await machine.handle_message(CHAT, "/preferencias")

        replies = await machine.handle_message(CHAT, "2")
        assert '1. "pollo" → Chicken Breast, Raw' in replies[0]

        replies = await machine.handle_message(CHAT, "1")
        assert replies == [messages.format_alias_deleted("pollo", "Chicken Breast, Raw")]
        assert memory.find_alias(CHAT, "pollo") is None

    @pytest.mark.asyncio
    async def test_menu_conversation_uses_clock(self, machine):
        await machine.handle_message(CHAT, LOGIN)
        await machine.handle_message(CHAT, "/preferences")
        assert conversation_of(machine).started_at == T0

    @pytest.mark.asyncio
    async def test_save_alias_store_failure(self, machine, memory, monkeypatch):
        def broken(*args, **kwargs):
            raise MemoryUnavailableError("disk full")

        await machine.handle_message(CHAT, LOGIN)
        await machine.handle_message(CHAT, "/preferences")
        await machine.handle_message(CHAT, "1")
        await machine.handle_message(CHAT, "mi batido")
        await machine.handle_message(CHAT, "whey")
        monkeypatch.setattr(memory, "save_alias", broken)

        replies = await machine.handle_message(CHAT, "1")

        assert replies == [messages.MEMORY_NOT_AVAILABLE]
        assert conversation_of(machine) is None

    @pytest.mark.asyncio
    async def test_delete_alias_store_failure(self, machine, memory, monkeypatch):
        def broken(*args, **kwargs):
            raise MemoryUnavailableError("disk full")

        memory.save_alias(CHAT, "pollo", "Chicken Breast, Raw", 42, "CUSTOM")
        await machine.handle_message(CHAT, LOGIN)
        await machine.handle_message(CHAT, "/preferences")
        await machine.handle_message(CHAT, "2")
        monkeypatch.setattr(memory, "delete_alias", broken)

        replies = await machine.handle_message(CHAT, "1")

        assert replies == [messages.MEMORY_NOT_AVAILABLE]
        assert conversation_of(machine) is None
        assert memory.find_alias(CHAT, "pollo") is not None

    @pytest.mark.asyncio
    async def test_delete_with_no_aliases(self, machine):
        await machine.handle_message(CHAT, LOGIN)
        await machine.handle_message(CHAT, "/preferences")
        replies = await machine.handle_message(CHAT, "eliminar")
        assert replies == [messages.NO_ALIASES_TO_DELETE]
        assert conversation_of(machine) is None

    @pytest.mark.asyncio
    async def test_exit_and_invalid_option(self, machine):
        await machine.handle_message(CHAT, LOGIN)
        await machine.handle_message(CHAT, "/preferences")
        assert await machine.handle_message(CHAT, "7") == [messages.INVALID_OPTION]
        assert await machine.handle_message(CHAT, "3") == [messages.EXITED_PREFERENCES]
        assert conversation_of(machine) is None

    @pytest.mark.asyncio
    async def test_refused_during_meal(self, machine):
        await start(machine)
        replies = await machine.handle_message(CHAT, "/preferences")
        assert replies == [messages.SESSION_ALREADY_ACTIVE]

    @pytest.mark.asyncio
    async def test_memory_disabled(self, catalog, interpreter, clock):
        machine = ConversationStateMachine(
            SessionRegistry(), catalog, interpreter, memory=NullMemoryService(), clock=clock
        )
        await machine.handle_message(CHAT, LOGIN)
        replies = await machine.handle_message(CHAT, "/preferences")
        assert replies == [messages.MEMORY_NOT_AVAILABLE]


# ============================================================================
# Expiry and failure recovery
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_idle_conversation_expires(self, machine, clock, session_factory):
        await start(machine)
        clock.advance(minutes=11)

        replies = await machine.handle_message(CHAT, "2 huevos")

        assert replies == [messages.SESSION_EXPIRED, messages.USE_START_TO_BEGIN]
        assert conversation_of(machine) is None
        with session_factory() as db:
            row = db.execute(select(SessionLog)).scalar_one()
        assert row.status == "expired"

    @pytest.mark.asyncio
    async def test_activity_keeps_conversation_alive(self, machine, clock, interpreter):
        await start(machine)
        clock.advance(minutes=9)
        await machine.handle_message(CHAT, "/search egg")
        clock.advance(minutes=9)
        interpreter.queue(meal_output((2, "large", "Egg")))

        replies = await machine.handle_message(CHAT, "2 huevos grandes")

        assert messages.SESSION_EXPIRED not in replies
        assert conversation_of(machine).state == ConversationState.AWAITING_CONFIRMATION

    @pytest.mark.asyncio
    async def test_expired_start_opens_new_conversation(self, machine, clock):
        await start(machine)
        clock.advance(minutes=30)
        replies = await machine.handle_message(CHAT, "/start")
        assert replies == [messages.SESSION_EXPIRED, messages.NEW_SESSION_STARTED]

    @pytest.mark.asyncio
    async def test_crash_restores_prior_state(self, machine, interpreter):
        await start(machine)
        interpreter.queue(RuntimeError("boom"))

        replies = await machine.handle_message(CHAT, "2 huevos")

        assert replies == [messages.PROCESSING_ERROR]
        assert conversation_of(machine).state == ConversationState.AWAITING_MEAL_DESCRIPTION
        errors = [
            e for e in machine.session_log.events_for(CHAT) if e["type"] == "error"
        ]
        assert errors[0]["data"]["type"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_message_while_processing(self, machine):
        await start(machine)
        conversation_of(machine).state = ConversationState.PROCESSING
        replies = await machine.handle_message(CHAT, "hola?")
        assert replies == [messages.STILL_PROCESSING]
