"""mail/ -- Outbound email for the OTP flow.

Layer rule: mail/ imports only stdlib, third-party libraries and core/.
auth/ depends on the EmailSender protocol defined here; api/main.py builds
the concrete sender once at startup and injects it.
"""
