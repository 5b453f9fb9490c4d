"""database/ -- Engine construction, schema, and the migration system.

Layer rule: database/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or auth/. auth/ stores import the table
definitions from database.schema; nothing flows the other way.
"""
