##############################
# Purpose: Dashboard web server
#          Read-only JSON API over the feedback store plus the static
#          dashboard front-end. Runs on the bot's event loop.
##############################

import logging
import os.path

from aiohttp import web

log = logging.getLogger(__name__)

STORE = web.AppKey("store", object)
PUBLIC_DIR = web.AppKey("public_dir", str)


async def feedback_logs(request):
    try:
        logs = await request.app[STORE].feedback_logs()
    except Exception:
        log.exception("Error reading feedback logs")
        return web.json_response({"error": "Failed to load feedback logs"},
                                 status=500)
    return web.json_response(logs)


async def status(request):
    return web.json_response({"ok": True, "message": "Feedback API running"})


async def index(request):
    path = os.path.join(request.app[PUBLIC_DIR], "index.html")
    if not os.path.isfile(path):
        raise web.HTTPNotFound()
    return web.FileResponse(path)


def create_app(store, public_dir):
    app = web.Application()
    app[STORE] = store
    app[PUBLIC_DIR] = public_dir

    app.router.add_get("/api/feedback-logs", feedback_logs)
    app.router.add_get("/api/status", status)
    app.router.add_get("/", index)
    if os.path.isdir(public_dir):
        # Registered last so the API routes take precedence
        app.router.add_static("/", public_dir)
    else:
        log.warning("Dashboard directory %s not found, serving the API only",
                    public_dir)
    return app


async def start_webserver(store, config):
    """Start the dashboard server; returns its runner, or None on failure."""
    runner = web.AppRunner(create_app(store, config.public_dir))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", config.port)
    try:
        await site.start()
    except OSError as e:
        log.error("Could not start the web server on port %d: %s",
                  config.port, e)
        await runner.cleanup()
        return None
    log.info("Website running on http://localhost:%d", config.port)
    return runner
