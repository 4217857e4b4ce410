"""User-facing chat messages (Spanish).

All prompts live here, grouped by concern, so wording can change without
touching conversation logic. Formatter functions build the messages that
embed dynamic data. Markup uses the HTML subset understood by chat
transports (<b>, <i>, <pre>).
"""

from meallog.orchestrator.models import (
    AliasRecord,
    PendingLearning,
    SearchCandidate,
    ValidatedMealItem,
)

MENU_PREVIEW_LIMIT = 10
DELETE_MENU_LIMIT = 15
RESULTS_LIMIT = 10

# ============================================================================
# Auth
# ============================================================================

LOGIN_REQUIRED = (
    "⚠️ Primero debes iniciar sesión con:\n"
    "<b>/login &lt;email&gt; &lt;password&gt;</b>"
)
INVALID_LOGIN_FORMAT = (
    "Formato de logueo inválido. Use: <b>/login &lt;email&gt; &lt;password&gt;</b>"
)
LOGIN_FAILED = "❌ Error de autenticación. Por favor, verifique sus credenciales."
LOGIN_SUCCESS = (
    "✅ <b>Inicio de sesión exitoso.</b>\n\n"
    "Ahora puedes registrar tus comidas usando el comando /start.\n"
    "Usa /preferences para ver y gestionar tus preferencias guardadas."
)
NOT_LOGGED_IN = "No has iniciado sesión."
LOGOUT_SUCCESS = (
    "👋 Sesión cerrada. Usa <b>/login &lt;email&gt; &lt;password&gt;</b> para volver a entrar."
)

# ============================================================================
# Session
# ============================================================================

SESSION_EXPIRED = (
    "⏰ Tu sesión anterior expiró por inactividad. Usa /start para iniciar una nueva."
)
SESSION_ALREADY_ACTIVE = (
    "⚠️ Ya tienes una sesión activa. Usa /cancel para cancelarla primero."
)
NO_ACTIVE_SESSION = "No hay ninguna sesión activa para cancelar."
SESSION_CANCELLED = "❌ Sesión cancelada. Usa /start para iniciar una nueva."
NO_SESSION_TO_SAVE = "No hay una sesión activa para guardar."
NO_PENDING_CHANGES = (
    "⚠️ No hay cambios pendientes de confirmación. Usa /start para iniciar."
)
NO_VALIDATED_DATA = (
    "❌ Error interno: No hay datos de comida validados. "
    "Por favor inicia de nuevo con /start."
)
USE_START_TO_BEGIN = (
    "💡 Para registrar una comida, usa el comando /start para iniciar una nueva sesión."
)

# ============================================================================
# Meal
# ============================================================================

NEW_SESSION_STARTED = (
    "🍽️ <b>Nueva sesión de registro iniciada</b>\n\n"
    "Describe tu comida incluyendo:\n"
    "• 📅 Tipo de comida (desayuno, almuerzo, cena, merienda)\n"
    "• ⚖️ Cantidades y pesos (ej: 100g de arroz)\n"
    "• 📏 Tamaños cuando aplique (huevos pequeños, medianos, grandes)\n\n"
    "💡 <i>Tip: Entre más detallado sea tu mensaje, menos preguntas tendré que hacerte.</i>\n\n"
    "Usa /cancel para cancelar en cualquier momento."
)
STILL_PROCESSING = (
    "⏳ Aún estoy procesando tu solicitud anterior. Por favor, espera un momento."
)
SAVE_SUCCESS = "✅ <b>¡Guardado exitoso!</b>\n\nTu comida ha sido registrada."
SAVE_RETRY_ERROR = "❌ Ocurrió un error al guardar. Intenta /save nuevamente."
PROCESSING_ERROR = (
    "❌ Ocurrió un error al procesar tu mensaje. Por favor, intenta nuevamente."
)
CLARIFICATION_NOT_UNDERSTOOD = (
    "🤔 No pude relacionar tu respuesta con las preguntas. "
    "Por favor, responde una por línea (ej: \"1. grande\")."
)
NEEDS_CLARIFICATION_PREFIX = "🤔 Necesito un poco más de información:\n\n"
STILL_NEEDS_CLARIFICATION = "🤔 Aún necesito más información:\n\n"
PROCESSING_CHANGES = "🔄 Entendido, vamos a corregir. Procesando tus cambios..."
NO_FOOD_ITEMS = "No encontré alimentos en tu mensaje."


def format_not_found_items(items: list[str]) -> str:
    item_list = "\n".join(f"• <b>{item}</b>" for item in items)
    return (
        f"⚠️ <b>No encontré estos alimentos:</b>\n\n{item_list}\n\n"
        "Por favor, dame nombres alternativos (ej: \"pollo\" -> \"pechuga de pollo\").\n\n"
        "💡 Tip: Usa /search [nombre] para buscar manualmente."
    )


def format_confirmation_item(index: int, item: ValidatedMealItem) -> str:
    """One numbered line of the confirmation summary."""
    marker = " 🧠" if item.was_resolved_from_alias else ""
    return f"{index}. {item.display_quantity} de <b>{item.food_name}</b>{marker}"


def format_confirmation(
    time: str, category: str, items: list[ValidatedMealItem]
) -> str:
    """Summary shown before the user commits the meal.

    Args:
        time: Display time ("HH:MM" or a placeholder when not logged).
        category: Meal category.
        items: Validated items, in request order.

    Returns:
        The confirmation message, with the memory legend when any item
        was resolved from an alias.
    """
    summary = "\n".join(
        format_confirmation_item(i, item) for i, item in enumerate(items, start=1)
    )
    legend = (
        "🧠 = reconocido desde tu memoria\n\n"
        if any(item.was_resolved_from_alias for item in items)
        else ""
    )
    return (
        "💾 Estás a punto de registrar:\n\n"
        f"<b>Hora:</b> {time}\n"
        f"<b>Tipo:</b> {category}\n\n"
        f"<b>Alimentos:</b>\n{summary}\n\n"
        f"{legend}"
        "¿Deseas hacer algún cambio?\n"
        "• Responde con el número del item para <b>buscar alternativas</b>\n"
        "• Usa <b>/save</b> para guardar los cambios"
    )


def format_description_error(error_message: str) -> str:
    return f"❌ {error_message}\n\nPor favor, intenta describir tu comida nuevamente."


# ============================================================================
# Photo transcripts
# ============================================================================

TEXT_DETECTED_INSTRUCTIONS = (
    "📝 <b>Texto detectado arriba ☝️</b>\n\n"
    "✏️ Si hay algún error, escribe las correcciones.\n"
    "✅ Si todo está correcto, usa /continue para continuar."
)
NO_TRANSCRIPT_SAVED = (
    "❌ No hay texto OCR guardado. Por favor, envía una foto nuevamente."
)
NO_TEXT_DETECTED = (
    "❌ No pude leer texto en la imagen. Asegúrate de que el texto sea legible "
    "o envía un mensaje de texto describiendo tu comida."
)
CONTINUE_ONLY_AFTER_PHOTO = (
    "⚠️ Este comando solo se puede usar después de enviar una foto "
    "para confirmar el texto detectado."
)


def format_detected_text(text: str) -> str:
    return f"<pre>{text}</pre>"


# ============================================================================
# Preferences
# ============================================================================

MEMORY_NOT_AVAILABLE = "⚠️ El servicio de memoria no está disponible."
NO_ALIASES_TO_DELETE = (
    "No tienes alias para eliminar. Usa /preferences para volver al menú."
)
EXITED_PREFERENCES = (
    "👋 Saliste del menú de preferencias. Usa /start para registrar comidas."
)
INVALID_OPTION = "Por favor, responde con 1, 2 o 3."
INVALID_NUMBER = "Por favor, responde con un número válido o /cancel para salir."
NO_PREFERENCES_SAVED = (
    "👍 Entendido. No se guardaron preferencias.\n"
    "Usa /start para registrar otra comida."
)
INVALID_MEMORY_RESPONSE = (
    "Por favor, responde 'si', 'no', o los números de las preferencias "
    "a guardar (ej: 1,3)."
)
CREATE_ALIAS_PROMPT = (
    "📝 <b>Crear nuevo alias</b>\n\n"
    "Escribe el término que usas normalmente.\n"
    "Ejemplo: \"pollo\", \"arroz integral\", \"mi proteina\""
)
NO_SEARCH_RESULTS = (
    "❌ No encontré resultados. Intenta con otro término de búsqueda:"
)


def format_term_saved(term: str) -> str:
    return (
        f"Término guardado: <b>{term}</b>\n\n"
        "Ahora escribe el nombre del alimento a buscar en el catálogo:"
    )


def format_alias_saved(input_term: str, resolved_name: str) -> str:
    return (
        f"✅ <b>Alias guardado!</b>\n\n\"{input_term}\" → {resolved_name}\n\n"
        "Usa /preferences para ver todos tus alias."
    )


def format_alias_deleted(input_term: str, resolved_name: str) -> str:
    return (
        f"🗑️ Alias eliminado: \"{input_term}\" → {resolved_name}\n\n"
        "Usa /preferences para volver al menú."
    )


def format_preferences_menu(aliases: list[AliasRecord]) -> str:
    """Alias overview plus the create/delete/exit menu."""
    message = "⚙️ <b>Gestión de Preferencias</b>\n\n"
    if aliases:
        message += "<b>Tus alias guardados:</b>\n"
        message += "\n".join(
            f"{i}. \"{alias.input_term}\" → {alias.resolved_food_name} ({alias.use_count}x)"
            for i, alias in enumerate(aliases[:MENU_PREVIEW_LIMIT], start=1)
        )
        if len(aliases) > MENU_PREVIEW_LIMIT:
            message += f"\n... y {len(aliases) - MENU_PREVIEW_LIMIT} más"
        message += "\n\n"
    else:
        message += "<i>No tienes alias guardados todavía.</i>\n\n"

    message += (
        "<b>Opciones:</b>\n"
        "1️⃣ <b>Crear</b> nuevo alias\n"
        "2️⃣ <b>Eliminar</b> un alias\n"
        "3️⃣ <b>Salir</b>\n\n"
        "Responde con el número de la opción."
    )
    return message


def format_delete_alias_menu(aliases: list[AliasRecord]) -> str:
    return "🗑️ <b>Eliminar alias</b>\n\nSelecciona el número del alias a eliminar:\n\n" + "\n".join(
        f"{i}. \"{alias.input_term}\" → {alias.resolved_food_name}"
        for i, alias in enumerate(aliases[:DELETE_MENU_LIMIT], start=1)
    )


def format_search_results(candidates: list[SearchCandidate]) -> str:
    listing = "\n".join(
        f"{i}. {c.food.name} <i>[{c.source_tab}]</i>"
        for i, c in enumerate(candidates[:RESULTS_LIMIT], start=1)
    )
    return (
        f"📋 <b>Resultados de búsqueda:</b>\n\n{listing}\n\n"
        "Responde con el número para seleccionar, o escribe otro término para buscar de nuevo."
    )


def format_memory_confirmation(learnings: list[PendingLearning]) -> str:
    """Post-save prompt asking which learnings become aliases."""
    listing = "\n".join(
        f"{i}. \"{learning.original_term}\" → <b>{learning.resolved_food_name}</b>"
        for i, learning in enumerate(learnings, start=1)
    )
    return (
        "✅ <b>¡Guardado exitoso!</b>\n\n"
        "🧠 <b>¿Quieres que recuerde estas asociaciones?</b>\n\n"
        f"{listing}\n\n"
        "• Responde <b>si</b> para guardar todas\n"
        "• Responde con los números (ej: 1,3) para guardar solo algunas\n"
        "• Responde <b>no</b> para no guardar ninguna"
    )


def format_preferences_saved(count: int) -> str:
    return (
        f"🧠 <b>¡{count} preferencia(s) guardada(s)!</b>\n\n"
        "La próxima vez que uses estos términos, los reconoceré automáticamente.\n"
        "Usa /start para registrar otra comida o /preferences para ver tus preferencias."
    )


def format_auto_applied_preferences(applied: list[str]) -> str:
    return f"🧠 Usando tus preferencias guardadas ({', '.join(applied)})..."


# ============================================================================
# Search
# ============================================================================

SEARCH_USAGE = (
    "Uso: /search [nombre del alimento]\nEjemplo: /search chicken breast"
)
SEARCH_ERROR = "❌ Error al buscar. Intenta de nuevo."
NO_ALTERNATIVES = (
    "No hay alternativas disponibles. Intenta escribir un nombre diferente."
)


def format_no_results(query: str) -> str:
    return f"❌ No encontré resultados para \"{query}\"."


def format_results(query: str, candidates: list[SearchCandidate]) -> str:
    listing = "\n".join(
        f"{i}. {c.food.name} <i>[{c.source_tab}]</i> (Score: {c.composite_score:.2f})"
        for i, c in enumerate(candidates[:RESULTS_LIMIT], start=1)
    )
    return f"📋 <b>Resultados para \"{query}\":</b>\n\n{listing}"


def format_alternatives(
    original_name: str,
    current_name: str,
    current_id: int,
    candidates: list[SearchCandidate],
) -> str:
    """Alternative foods for one validated item, current choice marked ✓."""
    listing = "\n".join(
        f"{i}. {c.food.name} <i>[{c.source_tab}]</i>"
        f"{' ✓' if c.food.id == current_id else ''}"
        for i, c in enumerate(candidates[:RESULTS_LIMIT], start=1)
    )
    return (
        f"📋 <b>Alternativas para \"{original_name}\":</b>\n"
        f"(Actualmente: {current_name})\n\n"
        f"{listing}\n\n"
        "Responde con el número para seleccionar, o 0 para mantener el actual."
    )
