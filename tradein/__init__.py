"""tradein/ -- Trade-in lifecycle: state machine, persistence and controller.

Layer rule: tradein/ imports from core/, shipping/ and cache/.
It does NOT import from api/. api/ imports from tradein/, not the other way around.
"""
