"""Shared test fixtures for the kapt-to-KSP migration test suite."""

import textwrap
from pathlib import Path

import pytest

from ksp_migrate.rule_table import load_rules


ROOM_ONLY = """\
plugins {
    id("com.android.library")
    kotlin("android")
    kotlin("kapt")
}

android {
    namespace = "com.example.data"
}

kapt {
    correctErrorTypes = true
    arguments {
        arg("room.schemaLocation", "$projectDir/schemas")
    }
}

dependencies {
    implementation("androidx.room:room-runtime:2.6.1")
    kapt("androidx.room:room-compiler:2.6.1")
}
"""

ROOM_ONLY_MIGRATED = """\
plugins {
    id("com.android.library")
    kotlin("android")
    id("com.google.devtools.ksp")
}

android {
    namespace = "com.example.data"
}

ksp {
    arg("room.schemaLocation", "$projectDir/schemas")
}

dependencies {
    implementation("androidx.room:room-runtime:2.6.1")
    ksp("androidx.room:room-compiler:2.6.1")
}
"""

HILT_ONLY = """\
plugins {
    id 'com.android.application'
    id 'org.jetbrains.kotlin.android'
    id 'org.jetbrains.kotlin.kapt'
    id 'com.google.dagger.hilt.android'
}

dependencies {
    implementation "com.google.dagger:hilt-android:2.51"
    kapt "com.google.dagger:hilt-compiler:2.51"
    kaptAndroidTest "com.google.dagger:hilt-compiler:2.51"
}
"""

HILT_ONLY_MIGRATED = """\
plugins {
    id 'com.android.application'
    id 'org.jetbrains.kotlin.android'
    id 'com.google.devtools.ksp'
    id 'com.google.dagger.hilt.android'
}

dependencies {
    implementation "com.google.dagger:hilt-android:2.51"
    ksp "com.google.dagger:hilt-compiler:2.51"
    kspAndroidTest "com.google.dagger:hilt-compiler:2.51"
}
"""

# Room is declared under both kapt and ksp: the file must not be rewritten.
HILT_ROOM_CONFLICT = """\
plugins {
    id("com.android.application")
    kotlin("android")
    kotlin("kapt")
    id("com.google.devtools.ksp")
}

dependencies {
    kapt("com.google.dagger:hilt-compiler:2.51")
    kapt("androidx.room:room-compiler:2.6.1")
    ksp("androidx.room:room-compiler:2.6.1")
}
"""

USER_DAO = """\
package com.example.data

import androidx.room.Dao
import androidx.room.Query

@Dao
interface UserDao {
    @Query("SELECT * FROM user")
    fun all(): List<User>?

    @Query("SELECT * FROM user WHERE id = :id")
    fun byId(id: Long): User

    @Query("SELECT * FROM user")
    fun observe(): Flow<List<User>?>

    @get:Query("SELECT COUNT(*) FROM user")
    val count: Int

    @Query("SELECT COUNT(*) FROM user WHERE age > :age")
    fun countOlder(age: Int): Int
}
"""


@pytest.fixture(scope="session")
def rules():
    """The rule table shipped with the package."""
    return load_rules()


@pytest.fixture
def tmp_build(tmp_path):
    """Factory fixture that writes a build file and returns its path.

    ``name`` may include directories (``app/build.gradle.kts``).
    """
    def _write(content: str, name: str = "build.gradle.kts") -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content), encoding="utf-8")
        return path
    return _write


@pytest.fixture
def room_module(tmp_path):
    """A Room module with a build file and one DAO source file."""
    module = tmp_path / "data"
    dao_dir = module / "src" / "main" / "kotlin" / "com" / "example" / "data"
    dao_dir.mkdir(parents=True)
    (module / "build.gradle.kts").write_text(ROOM_ONLY, encoding="utf-8")
    (dao_dir / "UserDao.kt").write_text(USER_DAO, encoding="utf-8")
    return module
