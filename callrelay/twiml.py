"""TwiML for the incoming-call webhook.

When a call comes in, Twilio hits the webhook and we answer with TwiML that
plays a short prompt and then opens a bidirectional Media Stream to the
bridge's stream endpoint.
"""

from __future__ import annotations

from twilio.twiml.voice_response import Connect, VoiceResponse


def stream_url_for(host: str, path: str) -> str:
    """WebSocket URL Twilio should stream to, e.g. ``wss://host/media-stream``."""
    host = host.removeprefix("https://").removeprefix("http://").rstrip("/")
    return f"wss://{host}/{path.lstrip('/')}"


def build_connect_twiml(
    stream_url: str,
    prompts: list[str] | None = None,
    pause_seconds: int = 1,
) -> str:
    """Render the ``<Response>`` document for an incoming call.

    Each prompt becomes a ``<Say>``; a ``<Pause>`` separates the first prompt
    from the rest, matching the "please wait ... you can start talking" flow.
    """
    response = VoiceResponse()
    for i, prompt in enumerate(prompts or []):
        response.say(prompt)
        if i == 0 and pause_seconds > 0:
            response.pause(length=pause_seconds)

    connect = Connect()
    connect.stream(url=stream_url)
    response.append(connect)
    return str(response)
