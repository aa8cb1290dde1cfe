import logging
import os

import uvicorn

logging.getLogger().handlers.clear()
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
)

if __name__ == "__main__":
    logging.info("Starting workflow automation API server")
    uvicorn.run(
        "api_server.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
