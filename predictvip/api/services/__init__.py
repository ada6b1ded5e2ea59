"""
Services package for subscription lifecycle business logic.

Modules are imported directly (e.g. `predictvip.api.services.state_machine`)
so that services can depend on each other without import cycles.
"""
