"""auth/ -- Identity resolution for Homeboard.

Decides, per request, who the caller is: a reverse proxy's asserted identity
(trusted only from whitelisted source addresses) or a local session cookie.

Layer rule: auth/ imports stdlib, third-party libraries, core/ and database/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
