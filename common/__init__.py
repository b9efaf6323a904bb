"""Configuración, BD y modelos compartidos entre bridge y collector."""
