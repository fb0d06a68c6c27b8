"""What a bot module hands to the runtime factory."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from core.dialog import Dialog
from core.live_chat import BridgeMessages


@dataclass
class BotScript:
    dialog: Dialog
    bridge_messages: Optional[BridgeMessages] = None
    # Clients the script created; closed on shutdown
    resources: list[Any] = field(default_factory=list)
