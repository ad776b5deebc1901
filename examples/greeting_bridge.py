"""Example: Programmatic bridge where the assistant speaks first.

Serves the incoming-call webhook and the media stream on one port with the
built-in aiohttp server (no FastAPI needed), with a custom persona and a
greeting.

Usage:
    export OPENAI_API_KEY=sk-...
    python greeting_bridge.py

Expose port 5050 with ngrok and set https://YOUR_NGROK/incoming-call as the
voice webhook of your Twilio number.
"""

from callrelay import RealtimeBridge, RelayConfig

config = RelayConfig.from_dict({
    "listen_port": 5050,
    "voice": "shimmer",
    "instructions": (
        "You are the front desk of a small bakery. Answer questions about "
        "opening hours and today's bread. Keep answers short."
    ),
    "greeting": {
        "enabled": True,
        "text": 'Greet the caller with "Thanks for calling the bakery! How can I help?"',
    },
    "call_setup": {"prompts": [], "pause_seconds": 0},
    "logging": {"show_timing_math": True},
})

bridge = RealtimeBridge(config)


if __name__ == "__main__":
    print("callrelay greeting bridge starting...")
    print("  Webhook: http://0.0.0.0:5050/incoming-call")
    print("  Stream:  ws://0.0.0.0:5050/media-stream")
    bridge.run()
