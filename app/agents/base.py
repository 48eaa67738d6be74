"""Base agent with output validation."""

import logging
from typing import Any, Dict

from app.errors import GenerationServiceError
from app.services.llm_client import LLMClient

logger = logging.getLogger(__name__)


class BaseAgent:
    """Base class for agents calling the generation/judgment service."""

    def __init__(self, llm_client: LLMClient, db_session):
        """Initialize base agent."""
        self.llm = llm_client
        self.db = db_session

    def execute(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute the agent once.

        Transient upstream failures are retried inside the client; attempts
        beyond that are scheduled by the retry controller, not here.

        Args:
            payload: Input payload dict

        Returns:
            Agent output dict

        Raises:
            GenerationServiceError: If the call fails or the output is invalid
        """
        name = self.__class__.__name__
        logger.info(f"Agent {name} executing")

        result = self._run(payload)

        if not self._validate(result):
            logger.warning(f"Agent {name} validation failed")
            raise GenerationServiceError(f"Agent {name} produced invalid output", retryable=True)

        logger.info(f"Agent {name} succeeded")
        return result

    def _run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run the agent logic (to be implemented by subclasses).

        Args:
            payload: Input payload

        Returns:
            Output dict
        """
        raise NotImplementedError

    def _validate(self, result: Dict[str, Any]) -> bool:
        """
        Validate the agent output (to be overridden by subclasses).

        Args:
            result: Agent output

        Returns:
            True if valid, False otherwise
        """
        return True
