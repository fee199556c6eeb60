"""Collaborators shared by every runtime workflow."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from ..auth import AccessClaims, AccessTokenSigner
from ..config import RuntimeSettings
from ..errors import SignalflowError
from ..persistence import WorkflowStore
from ..schema import ConnectorSchemaResolver
from ..tracking import ErrorSink, Tracker, report_exception
from ..transports import ChannelFactory, websocket_channel_factory


@dataclass
class RuntimeContext:
    store: WorkflowStore
    resolver: ConnectorSchemaResolver
    signer: Optional[AccessTokenSigner] = None
    tracker: Tracker = field(default_factory=Tracker)
    settings: RuntimeSettings = field(default_factory=RuntimeSettings)
    channel_factory: Optional[ChannelFactory] = None
    error_sink: ErrorSink = report_exception

    def __post_init__(self) -> None:
        if self.channel_factory is None:
            self.channel_factory = websocket_channel_factory(
                self.settings.request_timeout
            )

    def open_channel(self, url: str):
        if self.channel_factory is None:
            raise SignalflowError("No channel factory configured")
        return self.channel_factory(url)

    def sign_user_token(self, user: AccessClaims) -> str:
        """Short-lived token proving the workflow acts for ``user``."""
        if self.signer is None:
            raise SignalflowError("No access token signer configured")
        return self.signer.sign(user, expires_in=self.settings.token_lifetime)
