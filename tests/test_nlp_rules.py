from application_tracker import nlp_rules as nlp


def test_classify_status():
    subj = "Thank you for applying to Acme for Software Engineering Intern"
    body = "We received your application."
    assert nlp.classify_status(subj, body) == "Applied"


def test_classify_status_priority():
    # offer beats the rejection wording further down
    body = "We are pleased to offer you the role. Unfortunately the start date moved."
    assert nlp.classify_status("Update", body) == "Offer"
    assert nlp.classify_status("Interview invitation", "Please book a time") == "Interview"
    assert nlp.classify_status("Your application", "Unfortunately we will not be moving forward") == "Rejected"
    assert nlp.classify_status("Hello", "") == "Applied"


def test_offer_not_matched_when_negated():
    body = "We are unable to offer you a position at this time. We regret to inform you."
    assert nlp.classify_status("Application update", body) == "Rejected"


def test_normalize_status():
    assert nlp.normalize_status("Declined") == "Rejected"
    assert nlp.normalize_status("OA") == "Interview"
    assert nlp.normalize_status(" offer ") == "Offer"
    assert nlp.normalize_status("Other") is None
    assert nlp.normalize_status(None) is None


def test_extract_role():
    subj = "Application Confirmation - Data Science Intern (Summer 2026)"
    assert "intern" in nlp.extract_role(subj, "").lower()


def test_extract_role_from_position_phrase():
    body = "Thanks for your interest in the Backend Engineer position at Initech."
    assert nlp.extract_role("Thanks for applying", body) == "Backend Engineer"


def test_extract_company():
    subj = "Your application to Globex - SWE Intern"
    frm = "Globex Careers <careers@globex.com>"
    assert nlp.extract_company(subj, frm, "").lower().startswith("globex")


def test_extract_company_from_sender_domain():
    assert nlp.extract_company("Thanks for applying", "careers@acme.com", "") == "Acme"
    assert nlp.extract_company("Thanks for applying", "Jane <jane@gmail.com>", "") is None


def test_extract_company_from_ats_tenant():
    frm = "Workday <pfizer@pfizer.wd1.myworkdaysite.com>"
    assert nlp.extract_company("Thank you", frm, "") == "Pfizer"


def test_extract_misc_fields():
    body = "Location: Austin, TX. This is a hybrid role paying $120,000 - $150,000."
    fields = nlp.extract_fields("Application received", "jobs@acme.com", body)
    assert fields.location.startswith("Austin")
    assert fields.remote_status == "hybrid"
    assert fields.salary_range.startswith("$120,000")


def test_score_relevance_stays_below_fallback_cap():
    is_job, conf = nlp.score_relevance(
        "Interview for the position", "Your application and resume for this role and job offer",
        "Acme <no-reply@greenhouse.io>",
    )
    assert is_job is True
    assert conf <= nlp.FALLBACK_MAX_CONFIDENCE

    is_job, conf = nlp.score_relevance("Spring sale", "Unsubscribe from this newsletter", "shop@store.com")
    assert is_job is False
    assert conf <= nlp.FALLBACK_MAX_CONFIDENCE


def test_is_rejection():
    assert nlp.is_rejection("Update", "We regret to inform you")
    assert not nlp.is_rejection("Interview", "Looking forward to talking")
