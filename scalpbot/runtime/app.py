from __future__ import annotations

import asyncio

from scalpbot.config import Settings
from scalpbot.dashboard import run_dashboard
from scalpbot.infra import get_logger
from scalpbot.runtime.modular_engine import ModularEngine


class App:
    """Top-level orchestrator: engine plus the optional status dashboard."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.log = get_logger("scalpbot", settings.log_level)

    async def run(self) -> None:
        self.log.info(
            "starting app dry_run=%s assets=%s timeframes=%s",
            self.settings.dry_run,
            ",".join(self.settings.assets),
            ",".join(self.settings.timeframes),
        )
        engine = ModularEngine(self.settings, self.log)
        if self.settings.dashboard_enabled:
            await asyncio.gather(
                engine.run(),
                run_dashboard(
                    data_dir=self.settings.data_dir,
                    port=self.settings.dashboard_port,
                    log_level=self.settings.log_level,
                ),
            )
        else:
            await engine.run()


def run_main(settings: Settings) -> None:
    try:
        asyncio.run(App(settings).run())
    except KeyboardInterrupt:
        pass
