import pytest

pytest.importorskip("tree_sitter_java")

from repocache.models import FileType  # noqa: E402
from repocache.services.java_parser import (  # noqa: E402
    JavaSourceParser,
    analyze_tree,
    prepare_document_text,
)

PAGE_SOURCE = b"""package com.example.pages;

import org.openqa.selenium.WebElement;
import org.openqa.selenium.support.FindBy;

public class LoginPage extends BasePage {
    @FindBy(id = "username")
    private WebElement usernameField;

    private WebElement submitButton;

    private int retries;

    public void enterUsername(String username) {
        usernameField.sendKeys(username);
    }

    public static LoginPage open(String baseUrl, int timeout) {
        return new LoginPage();
    }
}
"""

TEST_SOURCE = b"""package com.example.tests;

import org.junit.jupiter.api.Test;
import static org.junit.jupiter.api.Assertions.assertTrue;

class CheckoutFlow {
    @Test
    void completesPurchase() {
        assertTrue(true);
    }
}
"""


@pytest.fixture(scope="module")
def parser():
    return JavaSourceParser()


def test_page_object_metadata(parser):
    tree = parser.parse(PAGE_SOURCE)
    metadata = parser.analyze(tree, PAGE_SOURCE, "src/main/java/com/example/pages/LoginPage.java")

    assert metadata.class_name == "LoginPage"
    assert metadata.package_name == "com.example.pages"
    assert metadata.imports == [
        "org.openqa.selenium.WebElement",
        "org.openqa.selenium.support.FindBy",
    ]
    assert metadata.is_page_object
    assert not metadata.is_test
    assert metadata.file_type is FileType.PAGE_OBJECT
    assert metadata.method_names == ["enterUsername", "open"]

    open_method = metadata.methods[1]
    assert open_method.signature == "public static LoginPage open(String baseUrl, int timeout)"
    assert open_method.modifiers == ("public", "static")
    assert open_method.return_type == "LoginPage"
    assert open_method.parameters == ("String baseUrl", "int timeout")

    names = [element.name for element in metadata.elements]
    assert names == ["usernameField", "submitButton"]
    assert metadata.elements[0].locator == 'id = "username"'
    assert metadata.elements[1].locator is None
    assert "FindBy" in metadata.annotations


def test_test_class_detected_from_imports_and_annotations(parser):
    tree = parser.parse(TEST_SOURCE)
    metadata = analyze_tree(tree, TEST_SOURCE, "src/test/java/CheckoutFlow.java")

    assert metadata.is_test
    assert metadata.file_type is FileType.TEST
    assert metadata.annotations == ["Test"]
    assert metadata.methods[0].annotations == ("Test",)
    assert metadata.methods[0].signature == "void completesPurchase()"
    assert "static org.junit.jupiter.api.Assertions.assertTrue" in metadata.imports


def test_page_object_detected_from_directory(parser):
    source = b"class Header { void open() {} }"
    metadata = analyze_tree(parser.parse(source), source, "ui/pages/Header.java")

    assert metadata.is_page_object
    assert metadata.file_type is FileType.PAGE_OBJECT


def test_utility_and_other_types(parser):
    util = b"public final class StringUtils { }"
    plain = b"public class Order { }"

    assert analyze_tree(parser.parse(util), util, "StringUtils.java").file_type is FileType.UTILITY
    assert analyze_tree(parser.parse(plain), plain, "Order.java").file_type is FileType.OTHER


def test_tree_is_plain_data(parser):
    tree = parser.parse(b"class A { void b() {} }")

    assert tree["type"] == "program"
    assert tree["children"][0]["type"] == "class_declaration"
    assert "has_error" not in tree
    broken = parser.parse(b"class {")
    assert broken.get("has_error") is True


def test_empty_source_yields_empty_metadata(parser):
    metadata = analyze_tree(parser.parse(b""), b"", "Empty.java")

    assert metadata.class_name is None
    assert metadata.methods == []
    assert metadata.file_type is FileType.OTHER


def test_prepare_document_text(parser):
    metadata = analyze_tree(parser.parse(PAGE_SOURCE), PAGE_SOURCE, "LoginPage.java")

    text = prepare_document_text(metadata)

    assert text.startswith("class LoginPage package com.example.pages pageObject")
    assert "public void enterUsername(String username)" in text
    assert text.endswith("usernameField submitButton")
