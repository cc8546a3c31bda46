"""Marketplace business records: enquiries, bids, quotes and bookings."""
