"""
Domain layer: entity records returned by the store and the pydantic
document models stored in ``body`` columns.
"""
