"""
callrelay

Presence and call-signaling relay for browser peer-to-peer calls. Clients
join with a unique username, see who is online, and exchange call requests,
offers, answers and ICE candidates through the server. Media never passes
through it.
"""

__version__ = "0.1.0"
