#!/usr/bin/env python3

import os
import sys
from conveyor import create_app

if __name__ == "__main__":
    app = create_app()

    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("FLASK_ENV") == "development"

    print(f"Starting conveyor on http://{host}:{port}")
    print(f"Approval mode: {app.pipeline_executor.approval_mode.value}")
    print("Press CTRL+C to stop the server")

    try:
        # The reloader would start a second executor with its own registry
        app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
    except KeyboardInterrupt:
        print("\nShutting down conveyor...")
        app.pipeline_executor.shutdown(wait=False, cancel_running=True)
        sys.exit(0)
