from __future__ import annotations

import os

import uvicorn

from parcelnotify.apps.api.main import create_app


def main() -> None:
    # Serve the admin and webhook API; set SMS_SCHEDULER_ENABLED=true to run dispatch in-process.
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
