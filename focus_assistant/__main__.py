import uvicorn

from focus_assistant.application.api.api_server import create_app
from focus_assistant.application.container import AssistantContainer
from focus_assistant.config.settings import get_settings
from focus_assistant.infrastructure.observability.logging import setup_logging


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    app = create_app(AssistantContainer.build(settings))
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
