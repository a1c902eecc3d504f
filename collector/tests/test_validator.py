"""validator モジュールのユニットテスト."""

from rankwatch.models import Competitor
from rankwatch.validator import validate_search_results


def _competitors(urls: list[str]) -> list[Competitor]:
    return [
        Competitor(position=i, title=f"t{i}", url=url, snippet="")
        for i, url in enumerate(urls, start=1)
    ]


class TestValidateSearchResults:
    """validate_search_results のテスト."""

    def test_diverse_results_pass(self):
        comps = _competitors([f"https://site{i}.com/" for i in range(9)])

        result = validate_search_results(5, comps, "example.com", "kw")

        assert result.is_valid
        assert result.warnings == []

    def test_high_position_warns(self):
        comps = _competitors([f"https://site{i}.com/" for i in range(9)])

        result = validate_search_results(2, comps, "example.com", "kw")

        assert not result.is_valid
        assert len(result.warnings) == 1
        assert "position 2" in result.warnings[0]

    def test_position_three_is_fine(self):
        comps = _competitors([f"https://site{i}.com/" for i in range(9)])

        assert validate_search_results(3, comps, "example.com", "kw").is_valid

    def test_low_diversity_warns(self):
        urls = [f"https://www.site{i % 3}.com/p{i}" for i in range(6)]

        result = validate_search_results(None, _competitors(urls), "example.com", "kw")

        assert not result.is_valid
        assert any("3 unique domains" in w for w in result.warnings)

    def test_low_diversity_needs_five_results(self):
        urls = ["https://a.com/1", "https://a.com/2", "https://b.com/"]

        assert validate_search_results(None, _competitors(urls), "example.com", "kw").is_valid

    def test_all_results_from_target_domain(self):
        """6 件全てがターゲットドメインのサブドメイン → サイト限定の警告."""
        urls = [f"https://shop{i}.example.com/item" for i in range(6)]

        result = validate_search_results(None, _competitors(urls), "https://www.example.com", "kw")

        assert not result.is_valid
        assert any("restricted to this site only" in w for w in result.warnings)

    def test_empty_competitors(self):
        result = validate_search_results(None, [], "example.com", "kw")

        assert result.is_valid

    def test_deterministic(self):
        comps = _competitors([f"https://x{i % 2}.com/" for i in range(6)])

        first = validate_search_results(1, comps, "example.com", "kw")
        second = validate_search_results(1, comps, "example.com", "kw")

        assert first == second
