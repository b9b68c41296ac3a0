import asyncio
import os

import uvloop


# Keep the gateway and store away from real credentials and the working tree.
os.environ.setdefault("AI_PROVIDER", "gemini")
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.pop("REDIS_URL", None)

# This environment blocks writes to the default asyncio selector wakeup socket.
# uvloop uses a different mechanism that keeps TestClient responsive.
asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
