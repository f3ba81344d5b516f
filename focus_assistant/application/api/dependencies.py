from fastapi import Request

from focus_assistant.application.container import AssistantContainer


def get_container(request: Request) -> AssistantContainer:
    """Container attached to the running app"""
    return request.app.state.container
