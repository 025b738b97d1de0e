"""Insight Engine: pitch-deck analysis service."""
