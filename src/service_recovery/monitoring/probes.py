"""
Health probes

A probe answers one question for one service: does it respond right now?
Probes are looked up by the configured method, with per-service custom
probes taking part for the ``custom`` method.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import HealthCheckConfig, ProbeMethod
from ..error_recovery.circuit_breaker import CircuitBreakerManager

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    """Outcome of a single probe invocation"""
    success: bool
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


Probe = Callable[[HealthCheckConfig], Awaitable[ProbeResult]]


async def ping_probe(config: HealthCheckConfig) -> ProbeResult:
    """Liveness of the in-process service; always responds"""
    return ProbeResult(success=True, latency_ms=0.0, data={"method": ProbeMethod.PING.value})


class GeminiAgentProbe:
    """
    API-call probe for Gemini-backed services

    Sends a minimal prompt through a Google ADK agent and treats any
    non-empty response as healthy.
    """

    APP_NAME = "maas_service_recovery_probe"
    USER_ID = "service_recovery_system"
    PROMPT = "Health check. Reply with the single word OK."

    def __init__(self, model: str = "gemini-2.0-flash"):
        self.model = model
        self.agent = None
        self.runner = None
        self.initialized = False

    def initialize(self):
        """Create the probe agent and its runner"""
        from google.adk import Agent
        from google.adk.runners import InMemoryRunner

        self.agent = Agent(
            model=self.model,
            name="health_probe",
            description="Minimal agent used to verify the model API responds",
            instruction="Answer health check prompts with the single word OK."
        )
        self.runner = InMemoryRunner(agent=self.agent, app_name=self.APP_NAME)
        self.initialized = True
        logger.info(f"Gemini health probe initialized for model {self.model}")

    async def __call__(self, config: HealthCheckConfig) -> ProbeResult:
        if not self.initialized:
            self.initialize()

        from google.genai import types

        session = await self.runner.session_service.create_session(
            app_name=self.APP_NAME,
            user_id=self.USER_ID
        )
        message = types.Content(role='user', parts=[types.Part.from_text(text=self.PROMPT)])

        response = ""
        async for event in self.runner.run_async(
            user_id=self.USER_ID,
            session_id=session.id,
            new_message=message
        ):
            if event.content and event.content.parts and event.content.parts[0].text:
                response += event.content.parts[0].text

        if not response.strip():
            return ProbeResult(success=False, error="Empty response from model API")
        return ProbeResult(success=True, data={"model": self.model, "response": response.strip()[:100]})


class ProbeRegistry:
    """Maps probe methods (and custom per-service probes) to implementations"""

    def __init__(self, breakers: CircuitBreakerManager, api_probe: Optional[Probe] = None):
        self.breakers = breakers
        self.probes: Dict[ProbeMethod, Probe] = {
            ProbeMethod.PING: ping_probe,
            ProbeMethod.API_CALL: api_probe or GeminiAgentProbe(),
            ProbeMethod.CIRCUIT_BREAKER_TEST: self._circuit_breaker_probe,
        }
        self.custom_probes: Dict[str, Probe] = {}

    def register(self, method: ProbeMethod, probe: Probe) -> None:
        self.probes[ProbeMethod(method)] = probe

    def register_custom(self, service: str, probe: Probe) -> None:
        self.custom_probes[service] = probe
        logger.debug(f"Registered custom probe for {service}")

    def resolve(self, config: HealthCheckConfig) -> Optional[Probe]:
        if config.method == ProbeMethod.CUSTOM:
            return self.custom_probes.get(config.service)
        return self.probes.get(config.method)

    async def probe(self, config: HealthCheckConfig) -> ProbeResult:
        """Run the service's probe under its timeout; failures become failed results"""
        probe = self.resolve(config)
        if probe is None:
            return ProbeResult(success=False, latency_ms=0.0, error=f"No {config.method.value} probe registered for {config.service}")

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(probe(config), timeout=config.timeout_seconds)
        except asyncio.TimeoutError:
            result = ProbeResult(
                success=False,
                error=f"Health check timeout after {config.timeout_seconds:.0f}s"
            )
        except Exception as e:
            logger.warning(f"Probe for {config.service} raised: {e}")
            result = ProbeResult(success=False, error=str(e) or type(e).__name__)

        if result.latency_ms is None:
            result.latency_ms = (time.monotonic() - started) * 1000
        return result

    async def _circuit_breaker_probe(self, config: HealthCheckConfig) -> ProbeResult:
        # Reads breaker state only; half-open probe slots stay untouched
        breaker = self.breakers.get_circuit_breaker(config.service)
        if breaker.cooling_down():
            return ProbeResult(
                success=False,
                latency_ms=0.0,
                error=f"Circuit breaker {config.service} is open",
                data={"state": breaker.state.state.value}
            )
        return ProbeResult(success=True, latency_ms=0.0, data={"state": breaker.state.state.value})
