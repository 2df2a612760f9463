import pytest
from slimbuddy.app.validation import (
    sanitize_text, optional_text, required_text, to_number, to_bool,
    validate_syns, validate_calories, validate_exercise_duration,
    validate_non_negative, validate_intensity
)
from slimbuddy.app.logging_config import ValidationError, MissingField

class TestValidation:
    """Test input validation functions"""

    def test_sanitize_text(self):
        """Test text sanitization"""
        # Basic sanitization
        assert sanitize_text("  hello world  ") == "hello world"

        # HTML escaping
        assert sanitize_text("<script>alert('xss')</script>") == "&lt;script&gt;alert(&#x27;xss&#x27;)&lt;/script&gt;"

        # Control character removal
        assert sanitize_text("hello\x00\x01world") == "helloworld"

        with pytest.raises(ValidationError):
            sanitize_text("a" * 3000)  # Too long

        with pytest.raises(ValidationError):
            sanitize_text(123)  # Not a string

    def test_optional_and_required_text(self):
        """Test blank handling for free-text fields"""
        assert optional_text(None) is None
        assert optional_text("   ") is None
        assert optional_text(" after lunch ") == "after lunch"

        assert required_text("Beans on toast", "meal_description") == "Beans on toast"

        with pytest.raises(MissingField) as exc:
            required_text("  ", "meal_description")
        assert exc.value.field == "meal_description"

        with pytest.raises(ValidationError) as exc:
            required_text("a" * 300, "activity", 100)
        assert exc.value.field == "activity"

    def test_to_number(self):
        """Test lenient numeric casting"""
        assert to_number(5) == 5.0
        assert to_number(" 7.5 ") == 7.5
        assert to_number("") is None
        assert to_number("abc") is None
        assert to_number(True) is None
        assert to_number(float("nan")) is None

    def test_to_bool(self):
        """Test boolean casting"""
        for value in (True, "true", "Yes", "1", "y", 1):
            assert to_bool(value) is True
        for value in (False, "false", "NO", "0", "n", 0):
            assert to_bool(value) is False
        assert to_bool("maybe") is None
        assert to_bool(None) is None

    def test_validate_syns(self):
        """Test Syn validation"""
        assert validate_syns(4.5) == 4.5
        assert validate_syns("0") == 0.0

        with pytest.raises(MissingField):
            validate_syns(None)

        with pytest.raises(ValidationError):
            validate_syns(-1)  # Negative

        with pytest.raises(ValidationError):
            validate_syns(5000)  # Too high

    def test_validate_calories(self):
        """Test calorie validation"""
        assert validate_calories(450) == 450
        assert validate_calories("320.6") == 321
        assert validate_calories(None) is None

        with pytest.raises(ValidationError):
            validate_calories(-100)

        with pytest.raises(ValidationError) as exc:
            validate_calories(100000, "calories_burned")
        assert exc.value.field == "calories_burned"

    def test_validate_exercise_duration(self):
        """Test exercise duration validation"""
        assert validate_exercise_duration(30) == 30.0
        assert validate_exercise_duration(60.5) == 60.5
        assert validate_exercise_duration(None) is None

        with pytest.raises(ValidationError):
            validate_exercise_duration(0)  # Zero

        with pytest.raises(ValidationError):
            validate_exercise_duration(1500)  # More than a day

    def test_validate_non_negative(self):
        assert validate_non_negative(None, "steps") is None
        assert validate_non_negative("8000", "steps") == 8000.0

        with pytest.raises(ValidationError) as exc:
            validate_non_negative(-2, "distance_km")
        assert exc.value.field == "distance_km"

    def test_validate_intensity(self):
        """Test exercise intensity validation"""
        assert validate_intensity("low") == "low"
        assert validate_intensity("MODERATE") == "moderate"
        assert validate_intensity(" High ") == "high"
        assert validate_intensity(None) is None
        assert validate_intensity("") is None

        with pytest.raises(ValidationError):
            validate_intensity("extreme")
