"""Swim school billing: payments, allocation and entitlements."""
