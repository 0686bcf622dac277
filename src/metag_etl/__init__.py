"""Batch importer for longitudinal metagenomic patient studies."""
