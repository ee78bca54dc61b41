import sys
import tempfile
import unittest
from pathlib import Path

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from image_rewriter.models import DependencyReference
from image_rewriter.parser import (
    detect_dependency_files,
    ecosystem_for_file,
    parse_build_gradle,
    parse_dependency_file,
    parse_package_json,
    parse_pom_xml,
    parse_requirements,
)

REQUIREMENTS = """# web stack
requests==2.28.1
flask>=2.0.0
django[bcrypt,argon2]
-r base.txt
--index-url https://pypi.example.com/simple

uvicorn[standard]~=0.22.0  # server
this is not a requirement
"""

PACKAGE_JSON = """{
  "name": "web",
  "dependencies": {"express": "^4.18.0", "lodash": "4.17.21"},
  "devDependencies": {"jest": "^29.0.0"}
}"""

POM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<project xmlns="http://maven.apache.org/POM/4.0.0">
  <modelVersion>4.0.0</modelVersion>
  <groupId>com.example</groupId>
  <artifactId>demo</artifactId>
  <dependencies>
    <dependency>
      <groupId>org.springframework.boot</groupId>
      <artifactId>spring-boot-starter-web</artifactId>
    </dependency>
    <dependency>
      <groupId>com.fasterxml.jackson.core</groupId>
      <artifactId>jackson-databind</artifactId>
      <version>2.15.2</version>
    </dependency>
  </dependencies>
</project>"""

BUILD_GRADLE = """plugins { id 'java' }
dependencies {
    implementation 'org.springframework.boot:spring-boot-starter-web:3.1.0'
    implementation "org.apache.commons:commons-lang3"
    implementation("com.google.guava:guava:32.1.2-jre")
    testImplementation 'junit:junit:4.13.2'
}"""


class TestParsers(unittest.TestCase):
    def test_requirements(self):
        references = parse_requirements(REQUIREMENTS)
        self.assertEqual([r.name for r in references], ["requests", "flask", "django", "uvicorn"])
        self.assertEqual(references[0], DependencyReference(name="requests", version="2.28.1", operator="=="))
        self.assertEqual((references[1].operator, references[1].version), (">=", "2.0.0"))
        self.assertEqual(references[2].extras, ("argon2", "bcrypt"))
        self.assertIsNone(references[2].version)
        self.assertEqual((references[3].operator, references[3].version), ("~=", "0.22.0"))

    def test_hashed_requirements(self):
        content = (
            "requests==2.28.1 \\\n"
            "    --hash=sha256:aaaa \\\n"
            "    --hash=sha256:bbbb\n"
            "flask==2.3.0 --hash=sha256:cccc  # pinned\n"
            "-r base.txt\n"
        )
        references = parse_requirements(content)
        self.assertEqual([r.name for r in references], ["requests", "flask"])
        self.assertEqual(references[0], DependencyReference(name="requests", version="2.28.1", operator="=="))
        self.assertEqual(references[1].version, "2.3.0")

    def test_package_json(self):
        references = parse_package_json(PACKAGE_JSON)
        self.assertEqual([(r.name, r.version) for r in references],
                         [("express", "^4.18.0"), ("lodash", "4.17.21"), ("jest", "^29.0.0")])

    def test_pom_xml(self):
        names = [r.name for r in parse_pom_xml(POM_XML)]
        self.assertEqual(names, ["demo", "spring-boot-starter-web", "jackson-databind"])

    def test_build_gradle(self):
        references = parse_build_gradle(BUILD_GRADLE)
        self.assertEqual(
            [(r.name, r.version) for r in references],
            [
                ("org.springframework.boot:spring-boot-starter-web", "3.1.0"),
                ("org.apache.commons:commons-lang3", None),
                ("com.google.guava:guava", "32.1.2-jre"),
            ],
        )

    def test_ecosystem_for_file(self):
        self.assertEqual(ecosystem_for_file("requirements-dev.txt"), "python")
        self.assertEqual(ecosystem_for_file("package.json"), "javascript")
        self.assertEqual(ecosystem_for_file("build.gradle.kts"), "java")
        self.assertIsNone(ecosystem_for_file("notes.txt"))


class TestParseDependencyFile(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.test_dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def write(self, name, content):
        path = self.test_dir / name
        path.write_text(content, encoding="utf-8")
        return path

    def test_dispatch_by_ecosystem_and_name(self):
        self.assertEqual(len(parse_dependency_file(self.write("requirements.txt", REQUIREMENTS), "python")), 4)
        self.assertEqual(len(parse_dependency_file(self.write("package.json", PACKAGE_JSON), "javascript")), 3)
        self.assertEqual(len(parse_dependency_file(self.write("pom.xml", POM_XML), "java")), 3)
        self.assertEqual(len(parse_dependency_file(self.write("build.gradle", BUILD_GRADLE), "java")), 3)

    def test_unsupported_combination(self):
        self.assertEqual(parse_dependency_file(self.write("package.json", PACKAGE_JSON), "python"), [])

    def test_failures_give_empty_list(self):
        self.assertEqual(parse_dependency_file(self.test_dir / "missing.txt", "python"), [])
        self.assertEqual(parse_dependency_file(self.write("package.json", "{not json"), "javascript"), [])
        self.assertEqual(parse_dependency_file(self.write("pom.xml", "<project><artifactId>"), "java"), [])
        self.assertEqual(parse_dependency_file(self.write("package.json", "[1, 2]"), "javascript"), [])


class TestDetectDependencyFiles(unittest.TestCase):
    def test_copy_and_add_lines(self):
        with tempfile.TemporaryDirectory() as tmp:
            context = Path(tmp)
            (context / "requirements.txt").write_text("requests==2.28.1\n", encoding="utf-8")
            dockerfile = context / "Dockerfile"
            text = (
                "FROM python:3.11\n"
                "COPY requirements.txt .\n"
                "COPY package.json package-lock.json ./\n"
                "COPY --from=build /app/pom.xml .\n"
                'ADD ["build.gradle", "/app/"]\n'
                "COPY --chown=app:app src/ /app/src/\n"
            )
            dockerfile.write_text(text, encoding="utf-8")

            found = detect_dependency_files(text, str(dockerfile))

        self.assertEqual([(f.line, f.ecosystem, f.relative_path) for f in found], [
            (1, "python", "requirements.txt"),
            (2, "javascript", "package.json"),
            (4, "java", "build.gradle"),
        ])
        self.assertEqual([r.name for r in found[0].references], ["requests"])
        self.assertEqual(found[1].references, [])
        self.assertTrue(found[0].absolute_path.endswith("requirements.txt"))

    def test_without_dockerfile_path(self):
        found = detect_dependency_files("COPY requirements.txt /app/\n")
        self.assertEqual(len(found), 1)
        self.assertIsNone(found[0].absolute_path)


if __name__ == '__main__':
    unittest.main()
