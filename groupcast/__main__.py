from __future__ import annotations
import uvicorn
from groupcast.config import load_settings
from groupcast.server.app import create_app

def main():
    """Serve the action endpoint, the webhook receiver and the background loops."""
    settings = load_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower(),
                proxy_headers=bool(settings.public_base_url))

if __name__ == "__main__":
    main()
