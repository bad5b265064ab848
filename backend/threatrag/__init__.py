"""threatrag — RAG indexing and search core for threat modeling."""

__version__ = "0.1.0"
