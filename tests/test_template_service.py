from app.services.template_service import DEFAULT_BODY_TEMPLATE, lookup_path, render_template


class TestRenderTemplate:
    def test_replaces_dotted_paths(self):
        result = render_template("Hi {{ contact.first_name }}, order {{order.id}}", {
            "contact": {"first_name": "Ana"},
            "order": {"id": 42},
        })
        assert result == "Hi Ana, order 42"

    def test_missing_path_renders_empty(self):
        assert render_template("Hello {{contact.name}}!", {}) == "Hello !"

    def test_booleans_render_lowercase(self):
        assert render_template("{{flag}}/{{other}}", {"flag": True, "other": False}) == "true/false"

    def test_empty_template(self):
        assert render_template(None, {"a": 1}) == ""

    def test_default_body(self):
        rendered = render_template(DEFAULT_BODY_TEMPLATE, {"event_key": "booking.created", "start_at": "10:00"})
        assert rendered == "Event booking.created for 10:00"


class TestLookupPath:
    def test_list_index(self):
        assert lookup_path({"items": [{"sku": "A"}, {"sku": "B"}]}, "items.1.sku") == "B"

    def test_out_of_range_index(self):
        assert lookup_path({"items": []}, "items.0") is None

    def test_through_scalar(self):
        assert lookup_path({"a": "text"}, "a.b") is None
