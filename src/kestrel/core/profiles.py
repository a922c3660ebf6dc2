from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class ScoringCategory:
    name: str
    weight: float
    must_have: tuple[str, ...] = field(default_factory=tuple)
    preferred: tuple[str, ...] = field(default_factory=tuple)


CATEGORIES: dict[str, ScoringCategory] = {
    "coreAzure": ScoringCategory(
        name="Azure Platform Development",
        weight=20,
        must_have=("C#", "Azure", "API Management", "APIM", "Azure Functions", "App Services"),
        preferred=("Service Bus", "Event Grid", "Azure Storage", "Key Vault", "Application Insights", "AKS"),
    ),
    "security": ScoringCategory(
        name="Security & Governance",
        weight=15,
        must_have=("OAuth", "JWT", "Entra ID", "Azure AD"),
        preferred=("API Security", "Authentication", "Authorization", "Identity Management"),
    ),
    "eventDriven": ScoringCategory(
        name="Event-Driven Architecture",
        weight=10,
        must_have=("Service Bus", "Event Grid", "Event-Driven", "Message Queue", "Messaging"),
        preferred=("Integration", "Microservices", "Event Sourcing", "CQRS", "Pub/Sub"),
    ),
    "performance": ScoringCategory(
        name="Performance & Reliability",
        weight=10,
        must_have=("C#",),
        preferred=("Load Testing", "Redis", "Entity Framework", "SQL Server", "Observability", "Monitoring"),
    ),
    "devops": ScoringCategory(
        name="Development with DevOps Practices",
        weight=0,
        preferred=("Azure DevOps", "GitHub Actions", "CI/CD", "Docker", "Automated Testing"),
    ),
    "seniority": ScoringCategory(
        name="Seniority & Remote Work",
        weight=10,
        must_have=("Senior", "Lead", "Principal", "Staff", "Remote"),
        preferred=("Remote-first", "Fully Remote", "100% Remote", "Work from Home", "Distributed"),
    ),
    "coreNet": ScoringCategory(
        name=".NET Development",
        weight=20,
        must_have=("C#", ".NET Core", ".NET 8", "ASP.NET", "MVC"),
        preferred=("Entity Framework", "SQL Server", "REST API", "Web API", "LINQ", "SignalR", "gRPC"),
    ),
    "frontendFrameworks": ScoringCategory(
        name="Frontend Framework Preferences",
        weight=10,
        preferred=("Blazor", "React", "TypeScript"),
    ),
    "legacyModernization": ScoringCategory(
        name="Legacy Modernization",
        weight=5,
        must_have=("VB.NET", "WebForms", "ASP.NET MVC", "Legacy"),
        preferred=("Modernization", "Migration", "Cloud Migration", "Legacy System"),
    ),
}

# Per search profile, sums to 100.
PROFILE_WEIGHT_DISTRIBUTIONS: dict[str, dict[str, float]] = {
    "core": {
        "coreAzure": 25,
        "security": 10,
        "eventDriven": 15,
        "performance": 10,
        "devops": 0,
        "seniority": 10,
        "coreNet": 20,
        "frontendFrameworks": 5,
        "legacyModernization": 5,
    },
    "security": {
        "coreAzure": 15,
        "security": 35,
        "eventDriven": 10,
        "performance": 5,
        "devops": 0,
        "seniority": 15,
        "coreNet": 15,
        "frontendFrameworks": 0,
        "legacyModernization": 5,
    },
    "event-driven": {
        "coreAzure": 15,
        "security": 10,
        "eventDriven": 30,
        "performance": 15,
        "devops": 0,
        "seniority": 10,
        "coreNet": 15,
        "frontendFrameworks": 0,
        "legacyModernization": 5,
    },
    "performance": {
        "coreAzure": 15,
        "security": 5,
        "eventDriven": 10,
        "performance": 30,
        "devops": 0,
        "seniority": 10,
        "coreNet": 20,
        "frontendFrameworks": 5,
        "legacyModernization": 5,
    },
    "backend": {
        "coreAzure": 20,
        "security": 15,
        "eventDriven": 15,
        "performance": 10,
        "devops": 0,
        "seniority": 10,
        "coreNet": 25,
        "frontendFrameworks": 0,
        "legacyModernization": 5,
    },
    "core-net": {
        "coreAzure": 10,
        "security": 10,
        "eventDriven": 5,
        "performance": 15,
        "devops": 0,
        "seniority": 10,
        "coreNet": 40,
        "frontendFrameworks": 5,
        "legacyModernization": 5,
    },
    "legacy-modernization": {
        "coreAzure": 15,
        "security": 5,
        "eventDriven": 10,
        "performance": 10,
        "devops": 0,
        "seniority": 15,
        "coreNet": 20,
        "frontendFrameworks": 5,
        "legacyModernization": 20,
    },
}


def default_weights() -> dict[str, float]:
    return {key: category.weight for key, category in CATEGORIES.items()}


def base_weights(profile: str | None) -> dict[str, float]:
    if profile and profile in PROFILE_WEIGHT_DISTRIBUTIONS:
        return dict(PROFILE_WEIGHT_DISTRIBUTIONS[profile])
    return default_weights()
