from flask_login import AnonymousUserMixin

from flask_app.utils.permissions import default_scope_for, is_directory_admin, user_can_access_scope


class TestDirectoryAdminCheck:
    """Role checks for directory administration"""

    def test_anonymous_user_is_not_admin(self):
        assert not is_directory_admin(AnonymousUserMixin())
        assert not is_directory_admin(None)

    def test_admin_roles(self, user_factory):
        for role in ("admin", "system_admin", "district_admin", "school_admin"):
            assert is_directory_admin(user_factory(f"user-{role}", directory_role=role))

    def test_viewer_is_not_admin(self, user_factory):
        assert not is_directory_admin(user_factory("viewer"))

    def test_super_admin_flag_overrides_role(self, user_factory):
        assert is_directory_admin(user_factory("root", is_super_admin=True))


class TestScopeAccess:
    """Tenant scope matching"""

    def test_global_roles_see_every_scope(self, user_factory):
        admin = user_factory("global", directory_role="system_admin")

        assert user_can_access_scope(admin, school_id="any", district_id="where")
        assert user_can_access_scope(admin, district_id="d-9")

    def test_district_admin_matches_on_district(self, user_factory):
        user = user_factory("district", directory_role="district_admin", district_id="d-1")

        assert user_can_access_scope(user, school_id="s-1", district_id="d-1")
        assert user_can_access_scope(user, district_id="d-1")
        assert not user_can_access_scope(user, school_id="s-1", district_id="d-2")

    def test_school_admin_matches_on_school(self, user_factory):
        user = user_factory("school", directory_role="school_admin", school_id="s-1", district_id="d-1")

        assert user_can_access_scope(user, school_id="s-1", district_id="d-1")
        assert not user_can_access_scope(user, school_id="s-2", district_id="d-1")
        assert not user_can_access_scope(user, district_id="d-1")

    def test_unassigned_scoped_admin_sees_nothing(self, user_factory):
        user = user_factory("floating", directory_role="school_admin")

        assert not user_can_access_scope(user, school_id=None, district_id=None)

    def test_viewer_is_denied(self, user_factory):
        assert not user_can_access_scope(user_factory("viewer"), school_id="s-1")


class TestDefaultScope:
    def test_default_scope_follows_assignment(self, user_factory):
        school = user_factory("school", directory_role="school_admin", school_id="s-1", district_id="d-1")
        district = user_factory("district", directory_role="district_admin", district_id="d-1")
        admin = user_factory("global", directory_role="admin")

        assert default_scope_for(school) == {"school_id": "s-1", "district_id": "d-1"}
        assert default_scope_for(district) == {"school_id": None, "district_id": "d-1"}
        assert default_scope_for(admin) == {}
        assert default_scope_for(AnonymousUserMixin()) == {}
