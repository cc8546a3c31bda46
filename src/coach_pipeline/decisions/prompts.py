"""Prompt templates for each decision type."""

from __future__ import annotations

import json
from typing import Any

from coach_pipeline.decisions.models import DecisionType

_OUTPUT_RULES = """
Output rules:
- Answer only with the JSON object described by the response schema.
- confidence_score is your honest estimate (0 to 1) that this answer is correct
  and complete. Lower it when information is missing, ambiguous or contradictory.
- Monetary values are in GBP.
"""

EMAIL_PARSER_PROMPT = """\
You extract coach hire enquiries from inbound customer emails for a UK coach
and bus rental marketplace.

Read the email and fill in the enquiry fields. Never invent contact details:
use the sender address when no other email is given, and leave unknown
optional fields empty. Convert relative dates ("next Friday") using the
received date from the context. List every required detail the customer did
not provide in missing_fields. Summarise the request in one sentence.
""" + _OUTPUT_RULES

ENQUIRY_ANALYZER_PROMPT = """\
You analyse coach hire enquiries before they are sent to suppliers.

Assess:
1. Complexity from 1 (simple transfer) to 10 (multi-day, multi-stop, special needs).
2. The most suitable vehicle class for the passenger count and trip.
3. A realistic UK market price band (min and max) for this trip.
4. Enquiry quality from 1 to 10: completeness and clarity of the details.
5. How many suppliers should be invited (1 to 10).
Explain each judgement briefly.
""" + _OUTPUT_RULES

SUPPLIER_SELECTOR_PROMPT = """\
You choose which coach operators should be invited to bid on an enquiry.

Score each candidate supplier on rating, price competitiveness, reliability,
proximity to the pickup location, response time and fleet match, then rank
them. Use only supplier ids from the candidate list. Flag risks such as a low
rating, slow responses or no suitable vehicle. recommended_count is how many
of the top-ranked suppliers should be invited.
""" + _OUTPUT_RULES

BID_EVALUATOR_PROMPT = """\
You evaluate supplier bids for a coach hire enquiry.

Criteria:
1. Price fairness against the estimated price band.
2. Supplier reliability from rating and completed jobs.
3. Vehicle quality and fit for the passenger count.
4. Overall value for money.

Anomalies: flag bids that are suspiciously low, far above market rate, or
from suppliers with poor ratings. Any supplier rated below 3.0 must be
mentioned in the anomaly summary. recommended_winner_id must be one of the
bid ids you were given. Explain the ranking so an admin can follow it.
""" + _OUTPUT_RULES

MARKUP_CALCULATOR_PROMPT = """\
You recommend the broker markup applied on top of a supplier price.

Stay within the markup bounds in the context. Weigh trip complexity, market
conditions, customer history (repeat customers and acceptance rate) and the
competitive position of the supplier price. Report the markup amount and
total you would charge before VAT and the probability the customer accepts.
""" + _OUTPUT_RULES

QUOTE_CONTENT_PROMPT = """\
You write the customer-facing copy for a coach hire quote.

Write a short description of the service, an email subject and body
presenting the quote, and up to five highlights. Use the prices exactly as
given; never recalculate or round them. Keep the tone professional and warm.
""" + _OUTPUT_RULES

JOB_DOCUMENTS_PROMPT = """\
You prepare operational documents for a confirmed coach booking.

Produce a job sheet for the operator and a briefing for the driver. Include
pickup and drop-off details, the schedule, passenger notes and parking
guidance. Only use facts from the context; write "TBC" for anything unknown.
""" + _OUTPUT_RULES

EMAIL_PERSONALIZER_PROMPT = """\
You personalise transactional emails for a coach hire marketplace.

Rewrite the base message for the named recipient and purpose. Keep every
fact, link and reference number from the base message unchanged. Choose a
tone: formal for suppliers and corporate customers, friendly for private
customers, urgent only for deadlines within 24 hours. The body is HTML.
""" + _OUTPUT_RULES

_TASK_INSTRUCTIONS: dict[DecisionType, tuple[str, str]] = {
    DecisionType.EMAIL_PARSER: (EMAIL_PARSER_PROMPT, "Parse this inbound email."),
    DecisionType.ENQUIRY_ANALYZER: (ENQUIRY_ANALYZER_PROMPT, "Analyse this enquiry."),
    DecisionType.SUPPLIER_SELECTOR: (
        SUPPLIER_SELECTOR_PROMPT,
        "Rank the candidate suppliers for this enquiry.",
    ),
    DecisionType.BID_EVALUATOR: (BID_EVALUATOR_PROMPT, "Evaluate these bids."),
    DecisionType.MARKUP_CALCULATOR: (
        MARKUP_CALCULATOR_PROMPT,
        "Recommend a markup for this quote.",
    ),
    DecisionType.QUOTE_CONTENT: (QUOTE_CONTENT_PROMPT, "Write the quote content."),
    DecisionType.JOB_DOCUMENTS: (JOB_DOCUMENTS_PROMPT, "Prepare the job documents."),
    DecisionType.EMAIL_PERSONALIZER: (
        EMAIL_PERSONALIZER_PROMPT,
        "Personalise this email.",
    ),
}


def build_messages(decision_type: DecisionType, context: dict[str, Any]) -> list[dict[str, str]]:
    """Render chat messages for one decision from a JSON-serializable context."""

    system_prompt, instruction = _TASK_INSTRUCTIONS[decision_type]
    payload = json.dumps(context, ensure_ascii=False, indent=2, sort_keys=True, default=str)
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": f"{instruction}\n\nContext:\n{payload}"},
    ]
