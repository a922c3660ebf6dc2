from __future__ import annotations

RANK_JOB_PROMPT = """
You are scoring how well a job posting fits a candidate.
Score every category from 0 to 100, then combine them with the weights given.
Return strict JSON with keys:
- fit_score: number (0..100, the weighted combination)
- category_scores: object mapping category key to number (0..100)
- reasons: string[] (why it fits)
- must_haves: string[] (required skills the candidate has)
- blockers: string[] (hard disqualifiers such as on-site only, clearance, wrong stack)
- missing_keywords: string[] (required skills the candidate lacks)

Search profile: {profile}
Category weights (percent):
{weights_json}

Candidate summary:
{candidate_summary}

Job: {title} at {company}
Description:
{description}
""".strip()

REJECTION_ANALYSIS_PROMPT = """
Analyze this job rejection reason and identify patterns to avoid similar jobs.

Rejection reason: "{reason}"
Job: {title} at {company}
Category scores: {category_scores}
Fit reasons: {fit_reasons}

Pattern types: seniority, tech_stack, technology, location, compensation, company, company_name, keyword.
Use type "company_name" with the employer's name as value when the rejection is specific to that employer.
Use type "technology" with the canonical product name as value for concrete technologies (for example AWS, Kafka).

Available categories for adjustments: {categories}
Adjustments are percentage points between -5 and +5.
- too junior or not enough experience: increase seniority
- too senior or overqualified: decrease seniority
- wrong tech stack: decrease the weight of that technology's category
- missing skill: increase the weight of that skill's category

Return strict JSON with keys:
- patterns: array of objects with keys type, value, confidence (0..1)
- suggested_adjustments: array of objects with keys category, adjustment, reason
""".strip()

LABEL_MAPPING_PROMPT = """
You map application form field labels to canonical keys.
Canonical keys: {keys}
Only use a key when the label clearly matches that field. When in doubt use "unknown".

Labels:
{labels}

Return strict JSON: {{"mappings": [{{"label": "exact label text", "key": "canonical_key"}}]}}
""".strip()
