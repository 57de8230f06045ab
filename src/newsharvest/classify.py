from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from .cascade import CascadeRunner, StrategyOutcome
from .models import ClassificationResult
from .normalize import normalize_label
from .ports import Completion
from .utils import log_event

FALLBACK_CATEGORY = "general"
FALLBACK_CONFIDENCE = 0.3
URL_CONFIDENCE = 0.95
DOMAIN_CONFIDENCE = 0.85
KEYWORD_CONFIDENCE_CAP = 0.9
AI_DEFAULT_CONFIDENCE = 0.9

URL_CATEGORY_PATTERNS: dict[str, list[str]] = {
    "economia": ["economia", "economic", "finanzas", "finance", "negocios", "business", "mercado", "market"],
    "politica": ["politica", "politics", "gobierno", "government", "congreso", "congress", "elecciones", "elections"],
    "deportes": ["deportes", "sports", "futbol", "football", "soccer", "tenis", "tennis", "basquetbol", "basketball"],
    "tecnologia": ["tecnologia", "technology", "tech", "digital", "internet", "software", "hardware", "innovacion"],
    "salud": ["salud", "health", "medicina", "medical", "hospital", "doctor", "enfermedad", "disease"],
    "educacion": ["educacion", "education", "universidad", "university", "escuela", "school", "estudiantes"],
    "cultura": ["cultura", "culture", "arte", "art", "musica", "music", "cine", "cinema", "teatro", "theater"],
    "internacional": ["internacional", "international", "mundo", "world", "global", "exterior", "foreign"],
    "nacional": ["nacional", "national", "pais", "country", "chile", "region"],
    "entretenimiento": ["entretenimiento", "entertainment", "espectaculos", "shows", "celebrities", "famosos"],
    "ciencia": ["ciencia", "science", "investigacion", "research", "estudio", "study", "descubrimiento"],
    "medio_ambiente": ["medio-ambiente", "environment", "clima", "climate", "ecologia", "ecology", "sustentabilidad"],
    "seguridad": ["seguridad", "security", "policia", "police", "crimen", "crime", "delincuencia"],
}

CATEGORY_KEYWORDS: dict[str, dict[str, Any]] = {
    "economia": {
        "keywords": [
            "dólar", "peso", "inflación", "banco central", "mercado", "inversión", "acciones",
            "bolsa", "pib", "empleo", "desempleo", "salario", "impuesto", "comercio",
            "exportación", "importación",
        ],
        "weight": 1.0,
    },
    "politica": {
        "keywords": [
            "presidente", "gobierno", "ministro", "congreso", "diputado", "senador", "ley",
            "reforma", "elecciones", "votación", "partido político", "coalición", "oposición",
        ],
        "weight": 1.0,
    },
    "deportes": {
        "keywords": [
            "gol", "partido", "equipo", "jugador", "entrenador", "campeonato", "torneo", "liga",
            "copa", "victoria", "derrota", "clasificación", "estadio",
        ],
        "weight": 1.0,
    },
    "tecnologia": {
        "keywords": [
            "tecnología", "software", "hardware", "aplicación", "app", "inteligencia artificial",
            "ia", "robot", "algoritmo", "datos", "ciberseguridad", "startup", "innovación",
        ],
        "weight": 1.0,
    },
    "salud": {
        "keywords": [
            "hospital", "médico", "paciente", "enfermedad", "tratamiento", "vacuna", "virus",
            "bacteria", "síntoma", "diagnóstico", "cirugía", "salud pública", "pandemia",
        ],
        "weight": 1.0,
    },
    "educacion": {
        "keywords": [
            "universidad", "colegio", "escuela", "estudiante", "profesor", "educación", "clase",
            "examen", "título", "carrera", "matrícula", "beca",
        ],
        "weight": 1.0,
    },
    "cultura": {
        "keywords": [
            "arte", "música", "cine", "película", "libro", "autor", "artista", "exposición",
            "museo", "teatro", "obra", "festival", "cultura",
        ],
        "weight": 0.9,
    },
    "internacional": {
        "keywords": [
            "estados unidos", "europa", "asia", "áfrica", "onu", "otan", "embajada", "diplomacia",
            "tratado", "conflicto internacional", "relaciones exteriores",
        ],
        "weight": 0.9,
    },
    "nacional": {
        "keywords": [
            "chile", "chileno", "región", "provincia", "comuna", "municipalidad", "intendencia",
            "gobernación",
        ],
        "weight": 0.8,
    },
    "entretenimiento": {
        "keywords": [
            "celebrity", "famoso", "actor", "actriz", "cantante", "show", "espectáculo", "estreno",
            "gala", "premio", "nominación",
        ],
        "weight": 0.8,
    },
    "ciencia": {
        "keywords": [
            "científico", "investigación", "estudio", "descubrimiento", "experimento",
            "laboratorio", "teoría", "hipótesis", "análisis", "publicación",
        ],
        "weight": 0.9,
    },
    "medio_ambiente": {
        "keywords": [
            "clima", "calentamiento global", "contaminación", "reciclaje", "energía renovable",
            "biodiversidad", "ecosistema", "deforestación", "emisiones",
        ],
        "weight": 0.9,
    },
    "seguridad": {
        "keywords": [
            "policía", "carabineros", "pdi", "delincuencia", "robo", "asalto", "crimen",
            "investigación policial", "detención", "seguridad ciudadana",
        ],
        "weight": 1.0,
    },
}

# None means "this is a general news site, score by keywords".
DOMAIN_RULES: dict[str, str | None] = {
    "emol.com": None,
    "biobiochile.cl": None,
    "latercera.com": None,
    "elmercurio.com": None,
    "df.cl": "economia",
    "gol.cl": "deportes",
    "fayerwayer.com": "tecnologia",
}


@dataclass(frozen=True)
class ClassificationSubject:
    url: str | None
    domain: str | None
    title: str
    content: str
    hint: str | None = None


class UrlPatternStrategy:
    name = "url"

    def __init__(self, patterns: dict[str, list[str]]) -> None:
        self.patterns = patterns

    def attempt(self, subject: ClassificationSubject) -> StrategyOutcome[str]:
        url = (subject.url or "").lower()
        if not url:
            return StrategyOutcome(strategy=self.name, value=None)
        for category, patterns in self.patterns.items():
            for pattern in patterns:
                if f"/{pattern}/" in url or f"/{pattern}-" in url:
                    return StrategyOutcome(strategy=self.name, value=category, confidence=URL_CONFIDENCE)
        return StrategyOutcome(strategy=self.name, value=None)


class KeywordStrategy:
    name = "keywords"

    def __init__(self, keywords: dict[str, dict[str, Any]]) -> None:
        self.keywords = keywords
        self._compiled = {
            category: [
                re.compile(rf"\b{re.escape(keyword.lower())}\b", re.IGNORECASE)
                for keyword in data["keywords"]
            ]
            for category, data in keywords.items()
        }

    def score(self, title: str, content: str) -> tuple[str | None, float]:
        text = f"{title or ''} {content or ''}".lower()
        if not text.strip():
            return None, 0.0
        best_category = None
        best_score = 0.0
        best_confidence = 0.0
        for category, patterns in self._compiled.items():
            weight = float(self.keywords[category].get("weight", 1.0))
            score = 0.0
            matched = 0
            for pattern in patterns:
                hits = len(pattern.findall(text))
                if hits:
                    score += hits * weight
                    matched += 1
            if matched and score > best_score:
                best_category = category
                best_score = score
                best_confidence = min(KEYWORD_CONFIDENCE_CAP, matched / len(patterns) * weight)
        return best_category, round(best_confidence, 4)

    def attempt(self, subject: ClassificationSubject) -> StrategyOutcome[str]:
        category, confidence = self.score(subject.title, subject.content)
        return StrategyOutcome(strategy=self.name, value=category, confidence=confidence)


class DomainRuleStrategy:
    name = "domain"

    def __init__(self, rules: dict[str, str | None]) -> None:
        self.rules = rules

    def attempt(self, subject: ClassificationSubject) -> StrategyOutcome[str]:
        domain = (subject.domain or "").lower()
        if domain:
            for pattern, category in self.rules.items():
                if pattern not in domain:
                    continue
                if not category:
                    # News-wide outlet: leave it to keyword scoring.
                    return StrategyOutcome(strategy=self.name, value=None)
                return StrategyOutcome(strategy=self.name, value=category, confidence=DOMAIN_CONFIDENCE)
        hint = normalize_label(subject.hint)
        if hint and hint in URL_CATEGORY_PATTERNS:
            return StrategyOutcome(strategy=self.name, value=hint, confidence=DOMAIN_CONFIDENCE)
        return StrategyOutcome(strategy=self.name, value=None)


class AiStrategy:
    name = "ai"

    def __init__(self, completion: Completion, categories: list[str], content_chars: int = 1500) -> None:
        self.completion = completion
        self.categories = categories
        self.content_chars = content_chars

    def build_prompt(self, subject: ClassificationSubject) -> str:
        return (
            "Classify the news article into exactly one category.\n"
            f"Categories: {', '.join(self.categories)}\n"
            'Reply with JSON: {"category": "<one of the categories>", "confidence": <0..1>}\n\n'
            f"Title: {subject.title}\n"
            f"URL: {subject.url or ''}\n"
            f"Content: {(subject.content or '')[: self.content_chars]}"
        )

    def attempt(self, subject: ClassificationSubject) -> StrategyOutcome[str]:
        reply = self.completion.classify(self.build_prompt(subject))
        category = normalize_label(str(reply.get("category") or ""))
        if category not in self.categories:
            return StrategyOutcome(
                strategy=self.name, value=None, error=f"unknown category {reply.get('category')!r}"
            )
        confidence = reply.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else AI_DEFAULT_CONFIDENCE
        except (TypeError, ValueError):
            confidence = AI_DEFAULT_CONFIDENCE
        return StrategyOutcome(
            strategy=self.name, value=category, confidence=max(0.0, min(1.0, confidence))
        )


class Classifier:
    def __init__(
        self,
        completion: Completion | None = None,
        *,
        min_confidence: float = 0.7,
        url_patterns: dict[str, list[str]] | None = None,
        domain_rules: dict[str, str | None] | None = None,
        keywords: dict[str, dict[str, Any]] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.min_confidence = min_confidence
        self.categories = list(url_patterns or URL_CATEGORY_PATTERNS)
        strategies: list[Any] = [
            UrlPatternStrategy(url_patterns or URL_CATEGORY_PATTERNS),
            DomainRuleStrategy(domain_rules if domain_rules is not None else DOMAIN_RULES),
            KeywordStrategy(keywords or CATEGORY_KEYWORDS),
        ]
        if completion is not None:
            strategies.append(AiStrategy(completion, self.categories))
        self._logger = logger or logging.getLogger("newsharvest.classify")
        self._runner = CascadeRunner(strategies, logger=self._logger)

    def classify(
        self,
        url: str | None = None,
        domain: str | None = None,
        title: str = "",
        content: str = "",
        min_confidence: float | None = None,
        hint: str | None = None,
    ) -> ClassificationResult:
        threshold = self.min_confidence if min_confidence is None else min_confidence
        subject = ClassificationSubject(url=url, domain=domain, title=title, content=content, hint=hint)
        result = self._runner.run(
            subject,
            accept=lambda outcome: outcome.strategy == "ai" or outcome.confidence >= threshold,
        )
        chosen = result.selected or result.best()
        if chosen is None:
            log_event(self._logger, logging.DEBUG, "classification_fallback", url=url, domain=domain)
            return ClassificationResult(
                category=FALLBACK_CATEGORY,
                confidence=FALLBACK_CONFIDENCE,
                method="fallback",
                attempted=result.attempted,
            )
        if result.selected is None:
            log_event(
                self._logger,
                logging.DEBUG,
                "classification_low_confidence",
                category=chosen.value,
                method=chosen.strategy,
                confidence=chosen.confidence,
            )
        return ClassificationResult(
            category=str(chosen.value),
            confidence=round(chosen.confidence, 4),
            method=chosen.strategy,
            attempted=result.attempted,
        )
