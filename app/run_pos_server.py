# app/run_pos_server.py
import asyncio, signal
import uvicorn
import contextlib

from infra import HttpContainer
from utils.config import load_cfg
from utils.logger import logger
from payments.app.bootstrap import build_services
from payments.app.pos_api import build_app


async def main():
    cfg = load_cfg()

    container = await HttpContainer.start(cfg)
    services = build_services(cfg, container.http)

    app = build_app(services)
    server_cfg = cfg.get("server", {}) or {}
    server = uvicorn.Server(
        uvicorn.Config(app, host=server_cfg.get("host", "127.0.0.1"),
                            port=int(server_cfg.get("port", 8080)),
                            loop="asyncio",
                            lifespan="off",
                            timeout_keep_alive=10,
                            log_config=None,
                            access_log=False)
    )

    http_task = asyncio.create_task(server.serve(), name="http")
    stop_event = asyncio.Event()

    def _graceful(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _graceful)
        except NotImplementedError:
            pass  # Windows

    logger.info(f"POS payments server listening on {server.config.host}:{server.config.port}")
    await stop_event.wait()
    server.should_exit = True
    with contextlib.suppress(asyncio.CancelledError):
        await http_task
    await container.stop()
    logger.info("POS payments server stopped")

if __name__ == "__main__":
    asyncio.run(main())
