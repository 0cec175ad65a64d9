"""Call-audio and call-control building blocks.

Twilio drives two flows: TwiML webhooks rendered from voice scripts, and a
Media Streams WebSocket handled by ``telephony.media_session``.
"""
