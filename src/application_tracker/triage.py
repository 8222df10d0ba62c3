"""
Zero-cost triage of incoming mail before any model is involved.

Non-job rules run first, job rules second, first match wins. A false
``not_job`` drops a message from the pipeline for good while ``uncertain``
is always re-checked by Stage 1, so the non-job lists are kept narrow.
"""
import logging
import re
from typing import Optional, Tuple

from .models import MessageRecord, TriageDecision

logger = logging.getLogger(__name__)

BODY_PREFIX_CHARS = 500

NON_JOB_DOMAINS = frozenset([
    # source control / developer tooling
    "github.com", "gitlab.com", "bitbucket.org", "stackoverflow.com",
    "vercel.com", "netlify.com", "heroku.com", "digitalocean.com", "linode.com",
    "cloudflare.com", "auth0.com", "okta.com",
    # newsletters and bulk mail platforms
    "medium.com", "substack.com", "mailchimp.com", "sendgrid.net", "amazonses.com",
    "mailgun.com", "beehiiv.com", "convertkit.com",
    # payment processors and shops
    "stripe.com", "paypal.com", "shopify.com", "etsy.com", "ebay.com", "amazon.com",
    # general SaaS and social
    "google.com", "microsoft.com", "apple.com", "facebook.com", "twitter.com",
    "linkedin.com", "youtube.com", "reddit.com", "discord.com", "slack.com",
    "zoom.us", "calendly.com", "typeform.com", "surveymonkey.com", "eventbrite.com",
    "meetup.com", "netflix.com", "spotify.com", "dropbox.com", "box.com", "notion.so",
    "airtable.com", "trello.com", "asana.com", "monday.com", "clickup.com",
    "figma.com", "canva.com", "adobe.com", "twilio.com",
])

ATS_DOMAINS = (
    "myworkday.com", "myworkdayjobs.com", "myworkdaysite.com", "greenhouse.io",
    "lever.co", "ashbyhq.com", "jobvite.com", "taleo.net", "brassring.com",
    "icims.com", "ultipro.com", "adp.com", "bamboohr.com", "successfactors.com",
    "workable.com", "smartrecruiters.com", "jazz.co", "applytojob.com",
    "hire.withgoogle.com", "amazon.jobs", "careers.microsoft.com", "jobs.apple.com",
    "metacareers.com", "careers.google.com",
)

JOB_BOARD_DOMAINS = frozenset([
    "indeed.com", "indeedemail.com", "glassdoor.com", "monster.com", "careerbuilder.com",
    "ziprecruiter.com", "simplyhired.com", "dice.com", "angel.co", "angellist.com",
    "wellfound.com", "themuse.com", "flexjobs.com", "remote.co", "weworkremotely.com",
    "remotive.io", "hired.com", "triplebyte.com", "vettery.com", "underdog.io",
])

NON_JOB_SUBJECT_PATTERNS = [re.compile(p, re.I) for p in (
    r"\bnewsletter\b",
    r"\bunsubscribe\b",
    r"\bweekly digest\b",
    r"\bblog post\b",
    r"\bnew article\b",
    r"\bwebinar\b",
    r"\binvoice\b",
    r"\breceipt\b",
    r"\bpayment\b",
    r"\bsubscription\b",
    r"\bfree trial\b",
    r"\bspecial offer\b",
    r"\bdiscount\b",
    r"\bcoupon\b",
    r"\bsurvey\b",
    r"\bgithub action",
    r"\bpull request\b",
    r"\bbuild (?:failed|passed|succeeded)\b",
    r"\bpipeline (?:failed|succeeded)\b",
    r"\bdeployment (?:failed|succeeded|complete)",
    r"\bsecurity alert\b",
    r"\bdependabot\b",
    r"\bnpm\b",
)]

# job boards whose mail is alerts and recommendations, never an application
DIGEST_DOMAINS = frozenset([
    "ziprecruiter.com", "monster.com", "careerbuilder.com", "dice.com",
    "simplyhired.com", "snagajob.com", "flexjobs.com", "themuse.com",
    "weworkremotely.com", "remoteok.io", "builtin.com", "idealist.org",
    "usajobs.gov", "match.indeed.com", "jobs.stackoverflow.com",
])

DIGEST_SENDERS = frozenset([
    "jobalerts-noreply@linkedin.com",
    "messages-noreply@linkedin.com",
    "notifications-noreply@linkedin.com",
    "donotreply@match.indeed.com",
])

DIGEST_SUBJECT_PATTERNS = [re.compile(p, re.I) for p in (
    r"^\d+ (?:new )?jobs?\b",
    r"\bnew jobs\b(?! (?:at|with) (?:the|my|our|your)\b)",
    r"\band \d+ more (?:new )?jobs?\b",
    r"\b(?:new|available|open) (?:positions|openings)\b",
    r"\bjob openings\b",
    r"\brecommended jobs?\b",
    r"\bjobs? for you\b",
    r"\bjobs? (?:you (?:might|may) (?:like|be interested)|that match|matching your|based on your)\b",
    r"\bsimilar jobs?\b",
    r"\bjobs? alerts?\b",
    r"\bjob digest\b",
    r"\b(?:weekly|daily|latest) jobs?\b",
    r"\bjobs? (?:newsletter|roundup)\b",
    r"\bnew jobs? in\b",
    r"\bjobs? near\b",
    r"\bjobs? within \d+ miles\b",
    r"\bcompanies are hiring\b",
    r"\bprofile views?\b",
    r"\bwho'?s viewed your\b",
    r"\byou appeared in \d+ searche?s?\b",
    r"\b(?:see|view) jobs at\b",
    r"\bcheck out (?:these |the )?jobs\b",
)]

DIGEST_BODY_PATTERNS = [re.compile(p, re.I) for p in (
    r"\bview all jobs?\b",
    r"\bsee more jobs?\b",
    r"\bmanage (?:your )?(?:job |email )?alerts?\b",
    r"\bupdate your preferences\b",
    r"\b(?:job )?recommendations based on\b",
    r"\bwe found \d+ (?:jobs?|opportunities)\b",
    r"\bhere are (?:some |the )?(?:latest |new )?jobs?\b",
    r"\btop picks for\b",
    r"\bmatches your (?:profile|skills|experience)\b",
    r"\bunsubscribe from\b",
)]

# a digest rule never fires when the subject talks about the candidate's own application
APPLICATION_SUBJECT_PHRASES = (
    "your application", "application to", "application was", "application has",
    "application status", "application update", "interview", "offer letter",
    "thank you for applying", "thanks for applying", "thank you for your interest",
    "we received your", "we have received", "next steps", "assessment",
    "coding challenge", "take-home", "background check", "reference check",
)

DIGEST_BODY_MIN_HITS = 2

JOB_PATTERNS = [re.compile(p, re.I) for p in (
    # application confirmation
    r"thank(?:s| you) for (?:your )?applying",
    r"application (?:has been |was )?received",
    r"we(?: have|'ve)? received your application",
    r"your application (?:for|to)\b",
    r"applied for the .{1,80} (?:position|role)",
    r"submitted your application",
    # interview scheduling
    r"schedul\w* .{0,40}(?:interview|phone screen|call)",
    r"interview .{0,20}(?:schedule|invitation|request)",
    r"would like to (?:interview|speak with you|chat)",
    r"next (?:steps?|stage) in (?:the|our) (?:hiring|recruitment|interview) process",
    r"coding (?:challenge|assessment|test)",
    r"technical (?:assessment|interview|screen)",
    # offer
    r"\bjob offer\b",
    r"\boffer letter\b",
    r"pleased to (?:offer|extend)",
    r"compensation package",
    r"[\-–—|:]\s*(?:job )?offer\b",
    # rejection
    r"regret to inform",
    r"not (?:be )?moving forward",
    r"decided not to (?:move|proceed)",
    r"other candidates?",
    r"position has been filled",
    # status updates
    r"application (?:status|update)",
    r"status of your application",
    r"regarding your (?:application|candidacy)",
    # role-title keywords
    r"\bsoftware engineer",
    r"\bdata (?:scientist|analyst|engineer)",
    r"\bproduct manager\b",
    r"\b(?:backend|frontend|full[- ]stack) (?:engineer|developer)",
)]

ATS_COMPANY_DOMAINS = {
    "amazon.jobs": "Amazon",
    "careers.google.com": "Google",
    "hire.withgoogle.com": "Google",
    "careers.microsoft.com": "Microsoft",
    "jobs.apple.com": "Apple",
    "metacareers.com": "Meta",
}

_DOMAIN_RE = re.compile(r"@([A-Za-z0-9.\-]+)")


def sender_domain(sender: str) -> Optional[str]:
    m = _DOMAIN_RE.search(sender or "")
    if not m:
        return None
    return m.group(1).strip(".").lower()


def is_ats_domain(domain: Optional[str]) -> bool:
    if not domain:
        return False
    return any(domain == ats or domain.endswith("." + ats) for ats in ATS_DOMAINS)


_ADDRESS_RE = re.compile(r"<([^>]+)>|([^<>\s]+@[^<>\s]+)")


def sender_address(sender: str) -> Optional[str]:
    m = _ADDRESS_RE.search(sender or "")
    if not m:
        return None
    return (m.group(1) or m.group(2)).strip().lower()


def is_digest_domain(domain: Optional[str]) -> bool:
    if not domain:
        return False
    return any(domain == d or domain.endswith("." + d) for d in DIGEST_DOMAINS)


def digest_rule(message: MessageRecord, domain: Optional[str]) -> Optional[str]:
    """Job alerts and recommendation mail. None when the message looks like a real application."""
    subject = message.subject or ""
    lowered = subject.lower()
    if any(phrase in lowered for phrase in APPLICATION_SUBJECT_PHRASES):
        return None
    address = sender_address(message.sender)
    if address in DIGEST_SENDERS:
        return f"digest_sender:{address}"
    if is_digest_domain(domain):
        return f"digest_domain:{domain}"
    for rx in DIGEST_SUBJECT_PATTERNS:
        if rx.search(subject):
            return f"digest_subject:{rx.pattern}"
    body = message.body or ""
    hits = [rx.pattern for rx in DIGEST_BODY_PATTERNS if rx.search(body)]
    if len(hits) >= DIGEST_BODY_MIN_HITS:
        return "digest_body:" + ",".join(hits)
    return None


def _non_job_rule(message: MessageRecord, domain: Optional[str]) -> Optional[str]:
    if domain and domain in NON_JOB_DOMAINS:
        return f"non_job_domain:{domain}"
    for rx in NON_JOB_SUBJECT_PATTERNS:
        if rx.search(message.subject or ""):
            return f"non_job_subject:{rx.pattern}"
    return digest_rule(message, domain)


def _job_rule(message: MessageRecord, domain: Optional[str]) -> Optional[str]:
    if is_ats_domain(domain):
        return f"ats_domain:{domain}"
    if domain and domain in JOB_BOARD_DOMAINS:
        return f"job_board:{domain}"
    snippet = (message.body or "")[:BODY_PREFIX_CHARS]
    for rx in JOB_PATTERNS:
        if rx.search(message.subject or ""):
            return f"job_subject:{rx.pattern}"
        if rx.search(snippet):
            return f"job_body:{rx.pattern}"
    return None


def explain(message: MessageRecord) -> Tuple[TriageDecision, Optional[str]]:
    domain = sender_domain(message.sender)
    rule = _non_job_rule(message, domain)
    if rule:
        return TriageDecision.NOT_JOB, rule
    rule = _job_rule(message, domain)
    if rule:
        return TriageDecision.DEFINITELY_JOB, rule
    return TriageDecision.UNCERTAIN, None


def triage(message: MessageRecord) -> TriageDecision:
    decision, rule = explain(message)
    logger.debug("[TRIAGE] %s -> %s (%s)", message.message_id, decision.value, rule)
    return decision


FREE_MAIL_DOMAINS = frozenset([
    "gmail.com", "googlemail.com", "yahoo.com", "outlook.com", "hotmail.com",
    "live.com", "icloud.com", "aol.com", "proton.me", "protonmail.com",
])

MAIL_SUBDOMAINS = frozenset([
    "mail", "email", "e", "careers", "career", "jobs", "recruiting", "recruitment",
    "hire", "hiring", "talent", "notifications", "notify", "noreply", "no-reply", "hr",
])

# senders that mass-mail candidates on behalf of many employers
BULK_SENDER_DOMAINS = frozenset([
    "indeed.com", "indeedemail.com", "linkedin.com", "glassdoor.com",
    "ziprecruiter.com", "monster.com", "careerbuilder.com", "dice.com",
])


def is_bulk_sender(sender: str) -> bool:
    domain = sender_domain(sender)
    if not domain:
        return False
    if is_ats_domain(domain):
        return True
    return any(domain == d or domain.endswith("." + d) for d in BULK_SENDER_DOMAINS)


def org_label(domain: Optional[str]) -> Optional[str]:
    """'careers.acme-corp.com' -> 'acme-corp'. None for free-mail, ATS and job-board hosts."""
    if not domain or domain in FREE_MAIL_DOMAINS or is_ats_domain(domain):
        return None
    if domain in JOB_BOARD_DOMAINS or domain in BULK_SENDER_DOMAINS:
        return None
    parts = [p for p in domain.split(".") if p]
    while len(parts) > 2 and parts[0] in MAIL_SUBDOMAINS:
        parts = parts[1:]
    if len(parts) < 2:
        return None
    # keep the label in front of a two-part public suffix such as co.uk
    if len(parts) >= 3 and len(parts[-2]) <= 3 and len(parts[-1]) == 2:
        return parts[-3]
    return parts[-2]


def company_from_ats_domain(sender: str) -> Optional[str]:
    domain = sender_domain(sender)
    if not domain:
        return None
    if domain in ATS_COMPANY_DOMAINS:
        return ATS_COMPANY_DOMAINS[domain]
    # tenant-style hosts, e.g. pfizer.wd1.myworkdaysite.com
    if "myworkday" in domain:
        tenant = domain.split(".")[0]
        if tenant and not tenant.startswith("wd"):
            return tenant.capitalize()
    return None
