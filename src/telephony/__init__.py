"""Call sessions and the relay between Twilio Media Streams and the Realtime engine.

One process serves many calls: every call gets a :class:`~telephony.session.CallSession`
held by the :class:`~telephony.registry.SessionRegistry`, and the
:class:`~telephony.relay.RelayCoordinator` drives both sockets of each call.
"""
