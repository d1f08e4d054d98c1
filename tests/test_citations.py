from streamux.citations import CitationTracker, format_citation, generate_footnotes


class TestCitationTracker:

    def test_indices_follow_first_seen_order(self):
        tracker = CitationTracker()
        assert format_citation(tracker, {"url": "https://a.example", "title": "A"}) == " [1]"
        assert format_citation(tracker, {"url": "https://b.example", "title": "B"}) == " [2]"
        assert format_citation(tracker, {"url": "https://a.example", "title": "A again"}) == " [1]"
        assert len(tracker) == 2

    def test_repeat_keeps_first_title(self):
        tracker = CitationTracker()
        tracker.add({"url": "https://a.example", "title": "First"})
        tracker.add({"url": "https://a.example", "title": "Second"})
        assert tracker.ordered()[0].title == "First"

    def test_footnotes(self):
        tracker = CitationTracker()
        format_citation(tracker, {"url": "https://a.example", "title": "A"})
        format_citation(tracker, {"url": "https://b.example"})
        assert generate_footnotes(tracker) == (
            "\n\nReferences:\n"
            "[1] A – https://a.example\n"
            "[2] https://b.example – https://b.example"
        )

    def test_no_citations_no_footnotes(self):
        assert generate_footnotes(CitationTracker()) == ""
