from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse, Response
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from streambot.tts import AudioSequencer, AudioStore

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


class OverlayBroker:
    """Fans overlay events out to every connected browser source.

    Acts as the audio player for :class:`AudioSequencer` (``play``/``stop``)
    and as the downstream subscriber for now-playing text and fatal errors.
    """

    __slots__ = ("listeners", "errors")

    def __init__(self) -> None:
        self.listeners: set[asyncio.Queue[Dict[str, str]]] = set()
        self.errors: List[str] = []

    def subscribe(self) -> asyncio.Queue[Dict[str, str]]:
        queue: asyncio.Queue[Dict[str, str]] = asyncio.Queue(maxsize=1000)
        self.listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Dict[str, str]]) -> None:
        self.listeners.discard(queue)

    def _broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        message = {"event": event, "data": json.dumps(payload)}
        stale: list[asyncio.Queue[Dict[str, str]]] = []
        for queue in list(self.listeners):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                stale.append(queue)
                logger.warning("overlay %s event dropped for a slow listener", event)
        for queue in stale:
            self.listeners.discard(queue)

    def play(self, locator: str) -> None:
        if not self.listeners:
            logger.warning("No overlay connected to play %s", locator)
        self._broadcast("play", {"locator": locator})

    def stop(self) -> None:
        self._broadcast("stop", {})

    def now_playing(self, text: str) -> None:
        self._broadcast("now_playing", {"text": text})

    def show_error(self, message: str) -> None:
        self.errors.append(message)
        self._broadcast("fault", {"message": message})


class AudioEndedIn(BaseModel):
    locator: Optional[str] = None


class AckOut(BaseModel):
    success: bool


class StatusOut(BaseModel):
    current: Optional[str] = None
    queue: List[str] = []
    listeners: int = 0
    errors: List[str] = []


OVERLAY_HTML = """<!doctype html>
<html>
<head>
<meta charset="utf-8">
<title>streambot overlay</title>
<style>
  body { margin: 0; background: transparent; font-family: sans-serif; overflow: hidden; }
  #error h1 { color: #ff0000; }
  #error p { color: #ff0000; font-size: 72px; }
  #playing { position: fixed; bottom: 0; right: 0; background: white; color: black;
             font-size: 24px; padding: 10px; border-radius: 10px; z-index: 1000;
             animation: fade 8s forwards; }
  @keyframes fade { 0% { opacity: 1; } 80% { opacity: 1; } 100% { opacity: 0; } }
</style>
</head>
<body>
<div id="error"></div>
<audio id="audio"></audio>
<script>
  const audio = document.getElementById("audio");
  let current = null;
  audio.onended = () => {
    const locator = current;
    current = null;
    fetch("audio/ended", {
      method: "POST",
      headers: {"Content-Type": "application/json"},
      body: JSON.stringify({locator}),
    });
  };
  const source = new EventSource("events");
  source.addEventListener("play", (e) => {
    current = JSON.parse(e.data).locator;
    audio.src = current.replace(/^\\//, "");
    audio.play();
  });
  source.addEventListener("stop", () => {
    current = null;
    audio.pause();
    audio.currentTime = 0;
    audio.removeAttribute("src");
  });
  source.addEventListener("now_playing", (e) => {
    if (document.getElementById("playing")) return;
    const div = document.createElement("div");
    div.id = "playing";
    div.textContent = JSON.parse(e.data).text;
    div.addEventListener("animationend", () => div.remove());
    document.body.appendChild(div);
  });
  source.addEventListener("fault", (e) => {
    const errorDiv = document.getElementById("error");
    if (errorDiv.children.length === 0) {
      const h1 = document.createElement("h1");
      h1.textContent = "Something went wrong";
      errorDiv.appendChild(h1);
    }
    const p = document.createElement("p");
    p.textContent = JSON.parse(e.data).message;
    errorDiv.appendChild(p);
  });
</script>
</body>
</html>
"""


def create_app(broker: OverlayBroker, sequencer: AudioSequencer, store: AudioStore) -> FastAPI:
    app = FastAPI(title="streambot overlay", version=API_VERSION)

    @app.get("/", response_class=HTMLResponse)
    def overlay_page():
        return HTMLResponse(OVERLAY_HTML)

    @app.get("/events")
    async def overlay_events():
        queue = broker.subscribe()

        async def gen():
            try:
                for message in list(broker.errors):
                    yield {"event": "fault", "data": json.dumps({"message": message})}
                if sequencer.current:
                    yield {"event": "play", "data": json.dumps({"locator": sequencer.current})}
                while True:
                    yield await queue.get()
            finally:
                broker.unsubscribe(queue)

        return EventSourceResponse(
            gen(),
            headers={
                "Cache-Control": "no-cache, no-transform",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/audio/{clip_id}")
    def get_audio(clip_id: str):
        clip = store.get(clip_id)
        if clip is None:
            raise HTTPException(status_code=404, detail="audio not found")
        return Response(content=clip.data, media_type=clip.content_type)

    @app.post("/audio/ended", response_model=AckOut)
    async def audio_ended(payload: AudioEndedIn):
        sequencer.on_playback_complete(payload.locator)
        return {"success": True}

    @app.get("/status", response_model=StatusOut)
    def status():
        return {
            **sequencer.snapshot(),
            "listeners": len(broker.listeners),
            "errors": list(broker.errors),
        }

    return app
