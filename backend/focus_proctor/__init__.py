"""Focus Proctor - real-time interview proctoring backend."""

__version__ = "1.0.0"
