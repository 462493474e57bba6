"""Improvement-proposal ingestion: crawler, parsers, version store, merge and resolve."""
