"""LMS client: Moodle web-service API over httpx.

Every Moodle call is a form-encoded POST to the REST endpoint carrying
`wsfunction`, the service token and `moodlewsrestformat=json`.  Moodle
reports many failures as HTTP 200 with an `exception` body, so both
transport errors and error bodies surface as LmsError.

Usage::

    client = MoodleLmsClient("https://lms.example.edu/webservice/rest/server.php", token)
    ref = await client.enroll(person, course)
    ...
    await client.aclose()
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, time
from typing import Any, Protocol

import httpx

from enrollment_service.core.config import SETTINGS
from enrollment_service.core.errors import LmsError
from enrollment_service.models.course import Course
from enrollment_service.models.participant import Person

logger = logging.getLogger(__name__)

DEFAULT_STUDENT_ROLE_ID = 5

# Warnings on enrol_manual_enrol_users that mean nothing was enrolled.
_CRITICAL_ENROL_WARNINGS = frozenset(
    {"usernotexist", "coursenotexist", "enrolnotpermitted"}
)

_SHORTNAME_MAX = 50


@dataclass(frozen=True, slots=True)
class LmsEnrollmentRef:
    """Remote identity of one enrollment on the LMS."""

    user_id: int
    course_id: int
    username: str
    already_enrolled: bool = False


class LmsClient(Protocol):
    async def enroll(self, person: Person, course: Course) -> LmsEnrollmentRef: ...
    async def unenroll(
        self, person: Person, course: Course, *, ref: LmsEnrollmentRef | None = None
    ) -> None: ...


def shortname_for_search(short_name: str) -> str:
    """Normalize a course short name the way LMS courses are created."""
    cleaned = re.sub(r"[^a-z0-9\s-]", "", short_name.lower())
    return re.sub(r"\s+", "-", cleaned)[:_SHORTNAME_MAX]


class MoodleLmsClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        student_role_id: int = DEFAULT_STUDENT_ROLE_ID,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token
        self._student_role_id = student_role_id
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Contract used by the triggers
    # ------------------------------------------------------------------

    async def enroll(self, person: Person, course: Course) -> LmsEnrollmentRef:
        user_id = await self._get_or_create_user(person)
        course_id = await self._resolve_course(course)

        if await self._is_enrolled(user_id, course_id):
            logger.info(
                "LMS user=%d already enrolled in course=%d, nothing to do",
                user_id,
                course_id,
            )
            return LmsEnrollmentRef(
                user_id=user_id,
                course_id=course_id,
                username=_username(person),
                already_enrolled=True,
            )

        params: dict[str, Any] = {
            "enrolments[0][roleid]": self._student_role_id,
            "enrolments[0][userid]": user_id,
            "enrolments[0][courseid]": course_id,
            "enrolments[0][suspend]": 0,
            # Active right away, whatever the course start date.
            "enrolments[0][timestart]": int(datetime.now(UTC).timestamp()),
        }
        if course.end_date is not None:
            end = datetime.combine(course.end_date, time.min, tzinfo=UTC)
            params["enrolments[0][timeend]"] = int(end.timestamp())

        body = await self._call("enrol_manual_enrol_users", params)
        _raise_on_critical_warnings(body)

        logger.info(
            "LMS enrollment created user=%d course=%d role=%d",
            user_id,
            course_id,
            self._student_role_id,
        )
        return LmsEnrollmentRef(
            user_id=user_id, course_id=course_id, username=_username(person)
        )

    async def unenroll(
        self, person: Person, course: Course, *, ref: LmsEnrollmentRef | None = None
    ) -> None:
        if ref is None:
            user_id = await self._find_user_id(person.email)
            if user_id is None:
                logger.info("No LMS user for %s, nothing to unenroll", person.email)
                return
            course_id = await self._resolve_course(course)
        else:
            user_id, course_id = ref.user_id, ref.course_id

        body = await self._call(
            "enrol_manual_unenrol_users",
            {
                "enrolments[0][userid]": user_id,
                "enrolments[0][courseid]": course_id,
            },
        )
        if isinstance(body, dict) and body.get("warnings"):
            logger.warning(
                "LMS unenroll warnings user=%d course=%d: %s",
                user_id,
                course_id,
                _format_warnings(body["warnings"]),
            )
        logger.info("LMS enrollment removed user=%d course=%d", user_id, course_id)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def _find_user_id(self, email: str) -> int | None:
        users = await self._call(
            "core_user_get_users_by_field", {"field": "email", "values[0]": email}
        )
        if isinstance(users, list) and users:
            return int(users[0]["id"])
        return None

    async def _get_or_create_user(self, person: Person) -> int:
        existing = await self._find_user_id(person.email)
        if existing is not None:
            return existing

        created = await self._call(
            "core_user_create_users",
            {
                "users[0][username]": _username(person),
                "users[0][firstname]": person.first_names,
                "users[0][lastname]": person.last_names,
                "users[0][email]": person.email,
                "users[0][auth]": "manual",
                "users[0][createpassword]": 1,
            },
        )
        if not isinstance(created, list) or not created:
            raise LmsError(f"user creation returned no user for {person.email}")
        user_id = int(created[0]["id"])
        logger.info("LMS user created id=%d for person=%d", user_id, person.id)
        return user_id

    # ------------------------------------------------------------------
    # Courses
    # ------------------------------------------------------------------

    async def _resolve_course(self, course: Course) -> int:
        """Find the remote course: exact short name, then prefix, then full name."""
        shortname = shortname_for_search(course.short_name)

        found = await self._course_by_shortname(shortname)
        if found is None:
            logger.debug("No LMS course with shortname=%s, trying prefix", shortname)
            remote_courses = await self._call("core_course_get_courses", {})
            if not isinstance(remote_courses, list):
                remote_courses = []
            found = next(
                (
                    int(c["id"])
                    for c in remote_courses
                    if str(c.get("shortname", "")).startswith(shortname)
                ),
                None,
            )
            if found is None:
                logger.debug("No LMS course with prefix=%s, trying full name", shortname)
                wanted = course.name.strip().lower()
                found = next(
                    (
                        int(c["id"])
                        for c in remote_courses
                        if str(c.get("fullname", "")).strip().lower() == wanted
                    ),
                    None,
                )

        if found is None:
            raise LmsError(
                f"no LMS course mapped to course {course.id} "
                f"(shortname {shortname!r}, name {course.name!r})"
            )
        return found

    async def _course_by_shortname(self, shortname: str) -> int | None:
        body = await self._call(
            "core_course_get_courses_by_field",
            {"field": "shortname", "value": shortname},
        )
        courses = body.get("courses", []) if isinstance(body, dict) else []
        if courses:
            return int(courses[0]["id"])
        return None

    # ------------------------------------------------------------------
    # Enrollments
    # ------------------------------------------------------------------

    async def _is_enrolled(self, user_id: int, course_id: int) -> bool:
        try:
            users = await self._call(
                "core_enrol_get_enrolled_users", {"courseid": course_id}
            )
        except LmsError as exc:
            # Enrolling again is harmless on Moodle, so an unknown state is not fatal.
            logger.warning(
                "Could not list LMS enrollments for course=%d: %s", course_id, exc
            )
            return False
        return isinstance(users, list) and any(
            int(u.get("id", -1)) == user_id for u in users
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, wsfunction: str, params: dict[str, Any]) -> Any:
        data = {
            "wstoken": self._token,
            "moodlewsrestformat": "json",
            "wsfunction": wsfunction,
            **{k: str(v) for k, v in params.items()},
        }
        try:
            response = await self._client.post("", data=data)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LmsError(f"{wsfunction}: {exc}") from exc

        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError as exc:
            raise LmsError(f"{wsfunction}: response is not JSON") from exc

        if isinstance(body, dict) and "exception" in body:
            raise LmsError(f"{wsfunction}: {body.get('message', body['exception'])}")
        return body


def _username(person: Person) -> str:
    return person.email.strip().lower()


def _format_warnings(warnings: list[dict]) -> str:
    return ", ".join(f"{w.get('warningcode')}: {w.get('message')}" for w in warnings)


def _raise_on_critical_warnings(body: Any) -> None:
    if not isinstance(body, dict):
        return
    warnings = body.get("warnings") or []
    if not warnings:
        return
    logger.warning("LMS enrollment warnings: %s", _format_warnings(warnings))
    critical = [w for w in warnings if w.get("warningcode") in _CRITICAL_ENROL_WARNINGS]
    if critical:
        raise LmsError(", ".join(str(w.get("message")) for w in critical))


class InMemoryLmsClient:
    """Stand-in LMS for local dev and tests.

    Set `fail_enroll` / `fail_unenroll` to an exception to simulate an
    outage; `calls` records ("enroll"|"unenroll", email, course_id).
    """

    def __init__(self) -> None:
        self.enrolled: set[tuple[str, int]] = set()
        self.calls: list[tuple[str, str, int]] = []
        self.fail_enroll: Exception | None = None
        self.fail_unenroll: Exception | None = None
        self._user_ids: dict[str, int] = {}

    def _user_id(self, email: str) -> int:
        return self._user_ids.setdefault(email, len(self._user_ids) + 1)

    async def enroll(self, person: Person, course: Course) -> LmsEnrollmentRef:
        self.calls.append(("enroll", person.email, course.id))
        if self.fail_enroll is not None:
            raise self.fail_enroll
        key = (person.email, course.id)
        already = key in self.enrolled
        self.enrolled.add(key)
        return LmsEnrollmentRef(
            user_id=self._user_id(person.email),
            course_id=course.id,
            username=_username(person),
            already_enrolled=already,
        )

    async def unenroll(
        self, person: Person, course: Course, *, ref: LmsEnrollmentRef | None = None
    ) -> None:
        self.calls.append(("unenroll", person.email, course.id))
        if self.fail_unenroll is not None:
            raise self.fail_unenroll
        self.enrolled.discard((person.email, course.id))

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if SETTINGS.lms_configured:
    lms_client: MoodleLmsClient | InMemoryLmsClient = MoodleLmsClient(
        SETTINGS.lms_url,  # type: ignore[arg-type]
        SETTINGS.lms_token,  # type: ignore[arg-type]
        student_role_id=SETTINGS.lms_student_role_id,
        timeout=SETTINGS.external_call_timeout_seconds,
    )
else:
    lms_client = InMemoryLmsClient()
