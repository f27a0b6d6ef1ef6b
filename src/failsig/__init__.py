"""failsig — сигнатуры падений тестов, классификация и дефект-группы."""

__version__ = "0.1.0"
