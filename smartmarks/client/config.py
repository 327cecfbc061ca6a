import os
from dataclasses import dataclass


@dataclass
class ClientConfig:
    url: str = "http://127.0.0.1:8072"
    timeout: float = 10.0
    poll_interval: float = 1.0
    store_workers: int = 4
    refresh_margin_seconds: int = 60

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            url=os.environ.get("SMARTMARKS_URL", cls.url),
            timeout=float(os.environ.get("SMARTMARKS_TIMEOUT", cls.timeout)),
            poll_interval=float(
                os.environ.get("SMARTMARKS_POLL_INTERVAL", cls.poll_interval)
            ),
            store_workers=int(
                os.environ.get("SMARTMARKS_STORE_WORKERS", cls.store_workers)
            ),
        )
