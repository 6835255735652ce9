#!/usr/bin/env python3

import os
import sys
from gantry import create_app

if __name__ == "__main__":
    app = create_app()

    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("FLASK_ENV") == "development"

    print(f"Starting gantry on http://{host}:{port}")
    print("Submit runs with POST /api/runs")
    print("Press CTRL+C to stop the server")

    try:
        app.run(host=host, port=port, debug=debug, threaded=True, use_reloader=False)
    except KeyboardInterrupt:
        print("\nShutting down gantry...")
        app.run_service.stop()
        sys.exit(0)
