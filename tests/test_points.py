"""
Unit tests for the points deriver and default formula.
"""

from runboard.constants import RunMode
from runboard.operations.points import (
    Milestone, PointsDeriver, PointsParameters, default_points_formula
)


class TestDefaultFormula:
    """Test the default points formula."""

    def setup_method(self):
        self.deriver = PointsDeriver()

    def test_slow_run_gets_minimum_points(self):
        assert self.deriver.points("10:00:00", "Any%", "GameCube") == 10

    def test_milestone_bonus_below_threshold(self):
        # 800 * e^(-3000/2400) * (1.2 + 300/3300 * 0.8)
        assert self.deriver.points("00:50:00", "Any%", "GameCube") == 292

    def test_rank_bonus(self):
        assert self.deriver.points("10:00:00", "Any%", "GameCube", rank=1) == 15
        assert self.deriver.points("10:00:00", "Any%", "GameCube", rank=3) == 11
        assert self.deriver.points("10:00:00", "Any%", "GameCube", rank=4) == 10

    def test_coop_share_per_owner(self):
        assert self.deriver.points("10:00:00", "Any%", "GameCube", mode=RunMode.COOP) == 5

    def test_ineligible_platform_or_category(self):
        assert self.deriver.points("00:10:00", "Any%", "PC") == 0
        assert self.deriver.points("00:10:00", "Free Play", "GameCube") == 0

    def test_platform_and_category_aliases(self):
        assert self.deriver.points("10:00:00", "Any%", "Game Cube") == 10
        assert self.deriver.points("10:00:00", "Nocuts Noships", "GameCube") == 10

    def test_unparseable_time_gets_zero(self):
        assert self.deriver.points("not a time", "Any%", "GameCube") == 0

    def test_disabled(self):
        params = PointsParameters(enabled=False)
        assert default_points_formula(params, 600, "Any%", "GameCube") == 0


class TestConfiguredParameters:
    """Test per-category tuning."""

    def test_category_min_time_scales_decay(self):
        params = PointsParameters(category_min_times={'Any%': 3600})
        # At the minimum time a run earns base * ratio; past the default milestone
        assert default_points_formula(params, 3600, "Any%", "GameCube") == 400

    def test_custom_milestone(self):
        params = PointsParameters(
            category_min_times={'Any%': 500},
            category_milestones={'Any%': Milestone(1000, 1.0, 2.0)},
        )
        assert default_points_formula(params, 500, "Any%", "GameCube") == 600

    def test_from_config_values(self):
        params = PointsParameters.from_config({
            'enabled': True,
            'eligible_platforms': ["GameCube"],
            'eligible_categories': ["Any%"],
            'rank_bonus': {"1": 2.0},
            'category_milestones': {'Any%': {'threshold_seconds': 10}, 'Bad%': "oops"},
        })
        assert params.rank_bonus == {1: 2.0}
        assert params.category_milestones == {}
        assert default_points_formula(params, 36000, "Any%", "GameCube", rank=1) == 20

    def test_deriver_reads_config_service(self, mocker):
        config_service = mocker.Mock()
        config_service.get_by_category.return_value = {'enabled': False}
        deriver = PointsDeriver(config_service)

        assert deriver.points("00:10:00", "Any%", "GameCube") == 0
        config_service.get_by_category.assert_called_with('points')

    def test_formula_is_replaceable(self):
        deriver = PointsDeriver(formula=lambda params, seconds, *args: 7)
        assert deriver.points("00:10:00", "Anything", "Anywhere") == 7
