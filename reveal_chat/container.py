from __future__ import annotations

from dependency_injector import containers, providers  # type: ignore[import-not-found]

from reveal_chat.metrics import InMemoryMetrics
from reveal_chat.models import AppConfig
from reveal_chat.providers import GeminiClient, OpenAIClient
from reveal_chat.repositories import (
    ConfigRepository,
    FileMessageStore,
    InMemoryMessageStore,
    KeyValueRepository,
    MessageStoreProtocol,
)
from reveal_chat.services import (
    MessageAnimation,
    MessageErrorHandler,
    MessageOrchestrator,
    MessagePersistence,
    ModelSelectionService,
    ModelService,
)
from reveal_chat.state_store import KeyedStateStore
from reveal_chat.tokens import TokenEstimator
from reveal_chat.validation import MessageValidator
from reveal_chat.view import PromptToolkitView


def load_app_config(repository: ConfigRepository) -> AppConfig:
    return repository.load_config()


def build_message_store(config: AppConfig) -> MessageStoreProtocol:
    if config.store == "memory":
        return InMemoryMessageStore()
    return FileMessageStore(config.data_dir)


class ChatAppContainer(containers.DeclarativeContainer):
    app = providers.Dependency()

    config_repository = providers.Singleton(ConfigRepository)
    config = providers.Singleton(load_app_config, config_repository)
    kv_repository = providers.Singleton(KeyValueRepository)
    message_store = providers.Singleton(build_message_store, config)

    metrics = providers.Singleton(InMemoryMetrics)
    room_store = providers.Singleton(KeyedStateStore)
    validator = providers.Singleton(MessageValidator)
    token_estimator = providers.Singleton(TokenEstimator)

    ai_provider_clients = providers.Callable(
        lambda gemini, openai: {"gemini": gemini, "openai": openai},
        gemini=providers.Factory(GeminiClient),
        openai=providers.Factory(OpenAIClient),
    )
    model_service = providers.Singleton(
        ModelService, config=config, clients=ai_provider_clients
    )

    persistence = providers.Singleton(
        MessagePersistence,
        store=message_store,
        settings=config.provided.persistence,
    )
    animation = providers.Singleton(
        MessageAnimation, settings=config.provided.animation
    )
    error_handler = providers.Singleton(
        MessageErrorHandler, settings=config.provided.orchestrator
    )
    orchestrator = providers.Singleton(
        MessageOrchestrator,
        store=room_store,
        persistence=persistence,
        model_client=model_service,
        validator=validator,
        token_estimator=token_estimator,
        error_handler=error_handler,
        animation=animation,
        settings=config.provided.orchestrator,
        metrics=metrics,
        default_model=config.provided.default_model,
    )
    model_selection = providers.Singleton(
        ModelSelectionService,
        kv=kv_repository,
        default_model=config.provided.default_model,
        validator=validator,
    )

    view = providers.Singleton(
        PromptToolkitView,
        app=app,
        on_submit=providers.Callable(lambda app: app.handle_input, app),
    )
