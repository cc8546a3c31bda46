"""Fixed email copy: base drafts for personalization and the non-AI sweeps."""

from __future__ import annotations

from html import escape


def supplier_invitation(
    *,
    company_name: str,
    supplier_name: str,
    reference: str,
    trip_summary: str,
    bid_url: str,
    respond_within_hours: int,
) -> tuple[str, str]:
    subject = f"New coach hire opportunity {reference}"
    html = (
        f"<p>Dear {escape(supplier_name)},</p>"
        f"<p>{escape(company_name)} would like to invite you to quote for enquiry "
        f"<strong>{escape(reference)}</strong>: {escape(trip_summary)}.</p>"
        f'<p>Please submit your price within {respond_within_hours} hours: '
        f'<a href="{escape(bid_url)}">{escape(bid_url)}</a></p>'
    )
    return subject, html


def customer_quote(
    *,
    company_name: str,
    customer_name: str,
    reference: str,
    total_price: str,
    valid_until: str,
    quote_url: str,
    body: str | None = None,
) -> tuple[str, str]:
    subject = f"Your coach hire quote {reference}"
    intro = escape(body) if body else "Thank you for your enquiry. Your quote is ready."
    html = (
        f"<p>Dear {escape(customer_name)},</p>"
        f"<p>{intro}</p>"
        f"<p>Total price: <strong>£{escape(total_price)}</strong> including VAT, "
        f"valid until {escape(valid_until)}.</p>"
        f'<p><a href="{escape(quote_url)}">View and accept your quote</a></p>'
        f"<p>{escape(company_name)}</p>"
    )
    return subject, html


def supplier_confirmation(
    *,
    company_name: str,
    supplier_name: str,
    booking_reference: str,
    trip_summary: str,
) -> tuple[str, str]:
    subject = f"Booking confirmed {booking_reference}"
    html = (
        f"<p>Dear {escape(supplier_name)},</p>"
        f"<p>Your bid has been accepted. Booking <strong>{escape(booking_reference)}</strong> "
        f"is confirmed: {escape(trip_summary)}.</p>"
        f"<p>The job sheet and driver briefing will follow shortly.</p>"
        f"<p>{escape(company_name)}</p>"
    )
    return subject, html


def customer_confirmation(
    *,
    company_name: str,
    customer_name: str,
    booking_reference: str,
    trip_summary: str,
) -> tuple[str, str]:
    subject = f"Your booking is confirmed {booking_reference}"
    html = (
        f"<p>Dear {escape(customer_name)},</p>"
        f"<p>Thank you for booking with {escape(company_name)}. Your booking "
        f"<strong>{escape(booking_reference)}</strong> is confirmed: "
        f"{escape(trip_summary)}.</p>"
    )
    return subject, html


def survey_request(*, company_name: str, booking_reference: str, survey_url: str) -> tuple[str, str]:
    subject = f"How was your trip? {booking_reference}"
    html = (
        f"<p>Thank you for travelling with {escape(company_name)}.</p>"
        f"<p>We would love to hear about your trip <strong>{escape(booking_reference)}</strong>. "
        f'It only takes a minute: <a href="{escape(survey_url)}">share your feedback</a>.</p>'
    )
    return subject, html


def bid_reminder(
    *,
    company_name: str,
    supplier_name: str,
    reference: str,
    bid_url: str,
) -> tuple[str, str]:
    subject = f"Reminder: quote requested for {reference}"
    html = (
        f"<p>Dear {escape(supplier_name)},</p>"
        f"<p>We are still waiting for your price for enquiry "
        f"<strong>{escape(reference)}</strong>.</p>"
        f'<p><a href="{escape(bid_url)}">Submit your bid</a> before the invitation expires.</p>'
        f"<p>{escape(company_name)}</p>"
    )
    return subject, html


def trip_summary(
    pickup_location: str,
    dropoff_location: str,
    departure_date: str | None,
    passenger_count: int | None,
) -> str:
    parts = [f"{pickup_location} to {dropoff_location}"]
    if departure_date:
        parts.append(f"on {departure_date}")
    if passenger_count:
        parts.append(f"for {passenger_count} passengers")
    return " ".join(parts)
