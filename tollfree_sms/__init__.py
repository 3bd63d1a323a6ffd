"""Toll-free SMS provisioning, compliance and carrier webhook service."""
