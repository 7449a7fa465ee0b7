"""Telephony transport codecs."""
