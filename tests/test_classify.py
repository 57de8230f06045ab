from newsharvest.classify import (
    FALLBACK_CATEGORY,
    ClassificationSubject,
    Classifier,
    DomainRuleStrategy,
    KeywordStrategy,
)


class FakeCompletion:
    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    def classify(self, prompt):
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply

    def generate_title(self, content):
        raise AssertionError("not used")


ECONOMY_TEXT = "El Banco Central advirtió que la inflación y el dólar presionan al mercado"


def test_url_pattern_wins_without_calling_the_model():
    completion = FakeCompletion({"category": "deportes"})
    classifier = Classifier(completion)

    result = classifier.classify(
        url="https://www.df.cl/economia/dolar-cierra-al-alza",
        domain="df.cl",
        title="Dólar cierra al alza",
        content="",
    )

    assert result.category == "economia"
    assert result.method == "url"
    assert result.confidence == 0.95
    assert result.attempted == ("url",)
    assert completion.prompts == []


def test_domain_rule_and_category_hint():
    classifier = Classifier()

    by_domain = classifier.classify(url="https://www.gol.cl/nota/123", domain="gol.cl", title="x")
    assert (by_domain.category, by_domain.method, by_domain.confidence) == ("deportes", "domain", 0.85)

    by_hint = classifier.classify(domain="example.org", title="x", hint="Economía")
    assert (by_hint.category, by_hint.method) == ("economia", "domain")



def test_news_wide_domain_leaves_scoring_to_keywords():
    result = Classifier().classify(domain="biobiochile.cl", title="Mercados", content=ECONOMY_TEXT)

    assert result.category == "economia"
    assert result.method == "keywords"
    assert result.attempted == ("url", "domain", "keywords")

    strategy = DomainRuleStrategy({"biobiochile.cl": None})
    subject = ClassificationSubject(url=None, domain="biobiochile.cl", title="x", content=ECONOMY_TEXT)
    assert strategy.attempt(subject).value is None

def test_low_confidence_keywords_are_kept_without_a_model():
    result = Classifier().classify(domain="example.org", title="Mercados", content=ECONOMY_TEXT)

    assert result.category == "economia"
    assert result.method == "keywords"
    assert 0 < result.confidence < 0.7
    assert result.attempted == ("url", "domain", "keywords")


def test_model_answer_is_trusted_when_known():
    completion = FakeCompletion({"category": "Medio Ambiente", "confidence": 0.4})
    result = Classifier(completion).classify(title="Informe anual", content="Sin palabras clave")

    assert result.category == "medio_ambiente"
    assert result.method == "ai"
    assert result.confidence == 0.4
    assert "Categories: economia" in completion.prompts[0]


def test_unknown_or_failing_model_falls_back():
    unknown = Classifier(FakeCompletion({"category": "astrologia"})).classify(title="x", content="")
    failing = Classifier(FakeCompletion(RuntimeError("503"))).classify(title="x", content="")

    for result in (unknown, failing):
        assert result.category == FALLBACK_CATEGORY
        assert result.method == "fallback"
        assert result.confidence == 0.3
        assert result.attempted == ("url", "domain", "keywords", "ai")


def test_classification_is_deterministic():
    classifier = Classifier()
    runs = {
        classifier.classify(url="https://emol.com/noticias/1", domain="emol.com", title="x", content=ECONOMY_TEXT)
        for _ in range(5)
    }
    assert len(runs) == 1


def test_threshold_override_accepts_keyword_match():
    result = Classifier().classify(title="Mercados", content=ECONOMY_TEXT, min_confidence=0.1)

    assert result.method == "keywords"
    assert result.attempted == ("url", "domain", "keywords")


def test_keyword_scores_are_capped():
    strategy = KeywordStrategy({"deportes": {"keywords": ["gol"], "weight": 1.0}})
    category, confidence = strategy.score("Gol gol gol", "")

    assert category == "deportes"
    assert confidence == 0.9
