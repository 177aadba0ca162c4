"""Courier: real-time chat delivery, receipts and presence backend."""
