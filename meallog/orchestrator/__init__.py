"""Dialogue orchestration for the meal logging agent.

Main Entry Points:
    ConversationStateMachine: Routes each inbound message (commands,
        login, per-state processors) and returns the replies.

Supporting Modules:
    meal_flow: Interpret -> clarify -> validate -> confirm -> save.
    preferences: Alias-management wizard.
    messages: User-facing message catalog.
    nl_engine: Meal text interpretation and clarification parsing.
"""
