"""Clinic Context Backend: active patient context for the clinic web app."""
