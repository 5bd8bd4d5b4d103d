"""auth/ -- OTP authentication and session-token lifecycle for CITSA.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and the
mail/ protocol. It does NOT import from api/. api/ imports from auth/, not
the other way around.
"""
