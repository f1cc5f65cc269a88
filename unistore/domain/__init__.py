"""
Domain layer package housing resource addresses, value objects and transfer controls.
"""
