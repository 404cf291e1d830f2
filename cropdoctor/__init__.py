"""CropDoctor: crop disease diagnosis backend."""

__version__ = "0.1.0"
