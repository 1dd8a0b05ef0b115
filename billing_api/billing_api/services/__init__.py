"""Billing engines and the notification port."""
