"""Credential and model selection for one interactive session, kept in memory only."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from metadata_injector.api import fetch_vision_models
from metadata_injector.errors import CredentialError


if TYPE_CHECKING:
    import httpx


@dataclass
class Session:
    api_key: str | None = field(default=None, repr=False)
    models: list[str] = field(default_factory=list)
    model: str | None = None
    verified: bool = False

    @property
    def is_ready(self) -> bool:
        return self.verified and self.model is not None and self.model in self.models

    async def verify(self, client: "httpx.AsyncClient") -> list[str]:
        """
        Check the API key against the models endpoint and remember the vision models.

        Raises:
            CredentialError: No key was entered, the service rejected it, or it gives
                access to no vision-capable model.

        """
        self.verified = False
        self.models = []
        self.model = None
        if not self.api_key or not self.api_key.strip():
            msg = "Please enter an API key."
            raise CredentialError(msg)

        models = await fetch_vision_models(client)
        if not models:
            msg = "No vision-capable models are available for this API key."
            raise CredentialError(msg)

        self.models = models
        self.verified = True
        logger.info("api_key_verified", models=len(models))
        return models

    def select_model(self, model: str) -> None:
        if not self.verified:
            msg = "Verify the API key before selecting a model."
            raise CredentialError(msg)
        if model not in self.models:
            logger.error("model_not_available", requested=model, available=self.models)
            msg = f"Model {model!r} is not available for this API key."
            raise CredentialError(msg)
        self.model = model
        logger.info("model_selected", model=model)
