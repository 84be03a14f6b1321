"""
FulfillME marketplace backend.

Askers post needs; fulfillers spend credits to unlock an asker's contact
details. This package provides the FastAPI service, its record store
abstractions and the offline sync client used by devices that post needs
while disconnected.
"""
