"""Typed FHIR resources, their JSON codec, and an async REST client"""

__version__ = "1.0.0"
