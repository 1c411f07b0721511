"""Client-side orchestration of Token-2022 transfer fees"""

__version__ = "0.1.0"
