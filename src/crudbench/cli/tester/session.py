"""State of one API testing session: loaded entities, selection, body and response."""

import asyncio
import logging
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict

from crudbench.endpoints import (
    DEFAULT_API_URL,
    EndpointDescriptor,
    api_base_url,
    synthesize_endpoints,
)
from crudbench.entities import EntityConfig
from crudbench.errors import MissingParameter
from crudbench.payload import Clock, generate_sample_body
from crudbench.settings import TesterSettings, conf
from crudbench.cli.tester.client import CommandBackend
from crudbench.cli.tester.executor import RequestExecutor
from crudbench.cli.tester.monitor import MonitorSnapshot, ServerLifecycleMonitor
from crudbench.cli.tester.scheduling import TimerHandle
from crudbench.cli.tester.state import StateContainer

logger = logging.getLogger("crudbench.session")

# delay between the server coming up and reloading its configuration
CONFIG_FETCH_DELAY = 1.0

SERVER_NOT_RUNNING = "Server is not running. Start the API server before sending requests."


class TesterState(BaseModel):
    model_config = ConfigDict(frozen=True)

    entities: tuple[EntityConfig, ...] = ()
    selected_entity_name: str | None = None
    endpoints: tuple[EndpointDescriptor, ...] = ()
    selected_endpoint: EndpointDescriptor | None = None
    api_url: str = DEFAULT_API_URL
    error: str | None = None
    is_loading_config: bool = False
    request_body: str = ""
    body_edited: bool = False
    response: str = ""
    is_sending: bool = False

    @property
    def selected_entity(self) -> EntityConfig | None:
        return next(
            (e for e in self.entities if e.name == self.selected_entity_name), None
        )


class TesterSession:
    """Loads the backend's configuration and sends test requests for it.

    When attached to a ``ServerLifecycleMonitor``, sends are refused unless the
    server is running, and the configuration is reloaded shortly after the
    server comes up.
    """

    def __init__(
        self,
        backend: CommandBackend,
        executor: RequestExecutor | None = None,
        *,
        config_timeout: float = 10.0,
        default_api_url: str = DEFAULT_API_URL,
        clock: Clock | None = None,
    ):
        self.backend: CommandBackend = backend
        self.executor: RequestExecutor = executor or RequestExecutor(backend)
        self.config_timeout: float = config_timeout
        self._clock: Clock | None = clock
        self._state: StateContainer[TesterState] = StateContainer(
            TesterState(api_url=default_api_url)
        )
        self._fetching: bool = False
        self._monitor: ServerLifecycleMonitor | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._pending_fetch: TimerHandle | None = None

    @classmethod
    def from_settings(
        cls,
        backend: CommandBackend,
        executor: RequestExecutor | None = None,
        settings: TesterSettings = conf,
    ) -> "TesterSession":
        return cls(
            backend,
            executor,
            config_timeout=settings.config_timeout,
            default_api_url=settings.default_api_url,
        )

    @property
    def state(self) -> TesterState:
        return self._state.snapshot

    def subscribe(self, listener: Callable[[TesterState], None]) -> Callable[[], None]:
        return self._state.subscribe(listener)

    # === Configuration ===

    async def fetch_configuration(self) -> bool:
        """Load entities from the backend.

        Only one fetch runs at a time: a call made while another is in flight
        returns False immediately without contacting the backend.

        Returns:
            True if at least one entity was loaded
        """
        if self._fetching:
            logger.debug("Configuration fetch already in flight, dropping request")
            return False

        self._fetching = True
        self._state.replace(is_loading_config=True, error=None)
        try:
            config = await asyncio.wait_for(
                self.backend.get_current_configuration(), timeout=self.config_timeout
            )
        except asyncio.TimeoutError:
            self._clear_configuration("Timed out loading the API configuration")
            return False
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            self._clear_configuration(f"Failed to load configuration: {e}")
            return False
        finally:
            self._fetching = False

        entities = tuple(config.entities_basic) if config is not None else ()
        if not entities:
            self._clear_configuration("No API configuration loaded")
            return False

        previous = self.state.selected_entity_name
        self._state.replace(
            entities=entities, api_url=api_base_url(config), is_loading_config=False
        )
        names = [entity.name for entity in entities]
        self.select_entity(previous if previous in names else names[0])
        logger.info(f"Loaded {len(entities)} entities, API at {self.state.api_url}")
        return True

    async def refresh_configuration(self) -> bool:
        """Reset the in-flight guard and fetch again."""
        self._fetching = False
        return await self.fetch_configuration()

    def _clear_configuration(self, error: str) -> None:
        self._state.replace(
            entities=(),
            selected_entity_name=None,
            endpoints=(),
            selected_endpoint=None,
            error=error,
            is_loading_config=False,
        )

    # === Selection ===

    def select_entity(self, name: str) -> bool:
        entity = next((e for e in self.state.entities if e.name == name), None)
        if entity is None:
            logger.warning(f"Unknown entity: {name}")
            return False

        endpoints = tuple(synthesize_endpoints(entity))
        self._state.replace(selected_entity_name=name, endpoints=endpoints)
        self.select_endpoint(endpoints[0] if endpoints else None)
        return True

    def select_endpoint(self, endpoint: EndpointDescriptor | None) -> None:
        """Select an endpoint and seed a sample body for write methods.

        An existing body is replaced only while the operator has not edited it.
        """
        changes: dict[str, object] = {"selected_endpoint": endpoint, "response": ""}
        state = self.state
        if (
            endpoint is not None
            and endpoint.has_body
            and (not state.request_body.strip() or not state.body_edited)
        ):
            changes["request_body"] = generate_sample_body(
                state.selected_entity, self._clock
            )
            changes["body_edited"] = False
        self._state.replace(**changes)

    def edit_body(self, text: str) -> None:
        self._state.replace(request_body=text, body_edited=True)

    # === Requests ===

    async def send(self) -> str:
        """Send the selected endpoint and keep the rendered response."""
        state = self.state
        if state.selected_endpoint is None:
            self._state.replace(response="No endpoint selected")
            return self.state.response
        if self._monitor is not None and not self._monitor.snapshot.is_running:
            self._state.replace(response=SERVER_NOT_RUNNING)
            return SERVER_NOT_RUNNING

        self._state.replace(is_sending=True, response="")
        try:
            response = await self.executor.send(
                state.selected_endpoint, state.api_url, state.request_body or None
            )
        except MissingParameter as e:
            response = f"Parameter Error: {e.message}"
        finally:
            self._state.replace(is_sending=False)

        self._state.replace(response=response)
        return response

    async def test_database_connection(self) -> str:
        result = await self.executor.test_database_connection()
        self._state.replace(error=result)
        return result

    # === Monitor ===

    def attach(self, monitor: ServerLifecycleMonitor) -> None:
        """Follow ``monitor``: gate sends on it and reload config once it runs."""
        self.detach()
        self._monitor = monitor
        was_running = monitor.snapshot.is_running

        def on_change(snapshot: MonitorSnapshot) -> None:
            nonlocal was_running
            if snapshot.is_running and not was_running:
                logger.debug("Server came up, scheduling configuration reload")
                if self._pending_fetch is not None:
                    self._pending_fetch.cancel()
                self._pending_fetch = monitor.scheduler.call_later(
                    CONFIG_FETCH_DELAY, self._fetch_after_start
                )
            was_running = snapshot.is_running

        self._unsubscribe = monitor.subscribe(on_change)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        if self._pending_fetch is not None:
            self._pending_fetch.cancel()
        self._monitor = None
        self._unsubscribe = None
        self._pending_fetch = None

    async def _fetch_after_start(self) -> None:
        self._pending_fetch = None
        await self.fetch_configuration()
