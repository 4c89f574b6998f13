import uvicorn

from caresync.config import settings
from caresync.main import app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_config=None)
