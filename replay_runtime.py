"""Replay-time interceptor injected into every archived page.

The script carries the archive identifier and the full resolution index
inline, re-implements the tiered matcher in JavaScript, patches ``fetch`` and
``XMLHttpRequest.open`` and repairs ``src``/``srcset``/``href`` values that
client code sets after the initial render.
"""
import json
from pathlib import Path
from typing import Dict, Mapping, Union

from bs4 import BeautifulSoup

RUNTIME_ATTR = "data-archive-runtime"

RUNTIME_JS = r"""
(function () {
  'use strict';
  var ARCHIVE_ID = __ARCHIVE_ID_JSON__;
  var INDEX = __INDEX_JSON__;
  var UNRESOLVABLE = ['javascript:', 'mailto:', 'data:'];
  var DYNAMIC_IMAGE_MARKERS = ['/_next/image', '?url='];
  var RUNTIME_TIERS = [1, 2, 4];

  window.__ARCHIVE_ID__ = ARCHIVE_ID;
  window.__URL_MAP__ = INDEX;

  function hasPrefix(s, prefixes) {
    var low = s.toLowerCase();
    for (var i = 0; i < prefixes.length; i++) {
      if (low.indexOf(prefixes[i]) === 0) return true;
    }
    return false;
  }

  function canonicalize(ref, base) {
    var s = String(ref == null ? '' : ref).trim();
    if (!s || hasPrefix(s, UNRESOLVABLE)) return null;
    s = s.split('&amp;').join('&');
    var u;
    try {
      u = base ? new URL(s, base) : new URL(s);
    } catch (e) {
      return null;
    }
    if (u.protocol !== 'http:' && u.protocol !== 'https:') return null;
    u.hash = '';
    return u.href;
  }

  function stripQuery(s) {
    return String(s).split(/[?#]/)[0];
  }

  function safeDecode(s) {
    try {
      return decodeURIComponent(s);
    } catch (e) {
      return s;
    }
  }

  function isDynamicImage(s) {
    for (var i = 0; i < DYNAMIC_IMAGE_MARKERS.length; i++) {
      if (String(s).indexOf(DYNAMIC_IMAGE_MARKERS[i]) !== -1) return true;
    }
    return false;
  }

  function pathSuffixCandidate(ref) {
    var s = stripQuery(String(ref).trim());
    var m = /^[a-zA-Z][a-zA-Z0-9+.\-]*:\/\/[^\/]*/.exec(s);
    if (m) s = s.slice(m[0].length);
    if (s.charAt(0) !== '/') s = '/' + s;
    return s === '/' ? null : s;
  }

  function matchExact(canonical, index) {
    return Object.prototype.hasOwnProperty.call(index, canonical) ? index[canonical] : null;
  }

  function matchDecoded(canonical, index) {
    var wanted = safeDecode(canonical);
    for (var key in index) {
      if (safeDecode(key) === wanted) return index[key];
    }
    return null;
  }

  function matchQueryStripped(canonical, index) {
    if (isDynamicImage(canonical)) return null;
    var wanted = stripQuery(canonical);
    for (var key in index) {
      if (stripQuery(key) === wanted) return index[key];
    }
    return null;
  }

  function matchPathSuffix(ref, canonical, index) {
    if (isDynamicImage(ref) || (canonical && isDynamicImage(canonical))) return null;
    var suffix = pathSuffixCandidate(ref);
    if (suffix === null) return null;
    for (var key in index) {
      var k = stripQuery(key);
      if (k.length >= suffix.length && k.slice(k.length - suffix.length) === suffix) {
        return index[key];
      }
    }
    return null;
  }

  function resolve(ref, index, pageUrl, tiers) {
    if (typeof ref !== 'string' || !ref || ref.trim().charAt(0) === '#') return null;
    var canonical = canonicalize(ref, pageUrl);
    if (canonical === null && hasPrefix(ref.trim(), UNRESOLVABLE)) return null;
    var order = (tiers || RUNTIME_TIERS).slice().sort();
    for (var i = 0; i < order.length; i++) {
      var tier = order[i];
      var hit = null;
      if (tier === 4) hit = matchPathSuffix(ref, canonical, index);
      else if (canonical === null) continue;
      else if (tier === 1) hit = matchExact(canonical, index);
      else if (tier === 2) hit = matchDecoded(canonical, index);
      else if (tier === 3) hit = matchQueryStripped(canonical, index);
      if (hit !== null) return hit;
    }
    return null;
  }

  var LOCAL_VALUES = {};
  for (var k in INDEX) LOCAL_VALUES[INDEX[k]] = true;

  function isLocal(v) {
    return v.indexOf('assets/') === 0 || v.indexOf('./assets/') === 0 ||
      LOCAL_VALUES[v] === true || v.indexOf('/view/' + ARCHIVE_ID + '/') !== -1;
  }

  function lookup(value) {
    if (value == null) return null;
    var s = String(value).trim();
    if (!s || s.indexOf('data:') === 0 || s.indexOf('blob:') === 0 || isLocal(s)) return null;
    return resolve(s, INDEX, window.location.href, RUNTIME_TIERS);
  }

  var origFetch = window.fetch;
  if (typeof origFetch === 'function') {
    window.fetch = function (input, init) {
      try {
        var isRequest = typeof Request !== 'undefined' && input instanceof Request;
        var local = lookup(isRequest ? input.url : String(input));
        if (local) input = isRequest ? new Request(local, input) : local;
      } catch (e) {}
      return origFetch.call(this, input, init);
    };
  }

  if (typeof XMLHttpRequest !== 'undefined') {
    var origOpen = XMLHttpRequest.prototype.open;
    XMLHttpRequest.prototype.open = function (method, url) {
      var args = Array.prototype.slice.call(arguments);
      try {
        var local = lookup(url);
        if (local) args[1] = local;
      } catch (e) {}
      return origOpen.apply(this, args);
    };
  }

  function rewriteSrcset(value) {
    return value.trim().split(/\s*,\s*/).filter(Boolean).map(function (cand) {
      var parts = cand.trim().split(/\s+/);
      var local = lookup(parts[0]);
      if (local) parts[0] = local;
      return parts.join(' ');
    }).join(', ');
  }

  function repairElement(el) {
    if (!el || el.nodeType !== 1) return;
    var v = el.getAttribute('src');
    var local;
    if (v) {
      local = lookup(v);
      if (local) el.setAttribute('src', local);
    }
    v = el.getAttribute('srcset');
    if (v) {
      var next = rewriteSrcset(v);
      if (next !== v) el.setAttribute('srcset', next);
    }
    if (el.tagName === 'LINK') {
      v = el.getAttribute('href');
      if (v) {
        local = lookup(v);
        if (local) el.setAttribute('href', local);
      }
    }
  }

  function repairTree(node) {
    if (!node || node.nodeType !== 1) return;
    repairElement(node);
    var found = node.querySelectorAll('[src], [srcset], link[href]');
    for (var i = 0; i < found.length; i++) repairElement(found[i]);
  }

  var OBSERVE_OPTIONS = {
    subtree: true,
    childList: true,
    attributes: true,
    attributeFilter: ['src', 'srcset', 'href']
  };
  var observer = null;

  function pause() {
    if (observer) observer.disconnect();
  }

  function resume() {
    if (observer && document.documentElement) {
      observer.observe(document.documentElement, OBSERVE_OPTIONS);
    }
  }

  function handleRecords(records) {
    pause();
    try {
      for (var i = 0; i < records.length; i++) {
        var rec = records[i];
        if (rec.type === 'attributes') {
          repairElement(rec.target);
        } else {
          for (var j = 0; j < rec.addedNodes.length; j++) repairTree(rec.addedNodes[j]);
        }
      }
    } finally {
      resume();
    }
  }

  if (typeof MutationObserver !== 'undefined') {
    observer = new MutationObserver(handleRecords);
    resume();
  }

  document.addEventListener('DOMContentLoaded', function () {
    pause();
    try {
      repairTree(document.documentElement);
    } finally {
      resume();
    }
  });

  window.__ARCHIVE_RUNTIME__ = {
    archiveId: ARCHIVE_ID,
    index: INDEX,
    canonicalize: canonicalize,
    resolve: resolve,
    lookup: lookup,
    pause: pause,
    resume: resume
  };
})();
"""


def _script_json(value) -> str:
    # "<" only occurs inside JSON strings, where < is equivalent.
    return json.dumps(value).replace("<", "\\u003c")


def build_runtime_script(archive_id: str, index: Mapping[str, str]) -> str:
    return RUNTIME_JS.replace("__ARCHIVE_ID_JSON__", _script_json(archive_id)).replace(
        "__INDEX_JSON__", _script_json(dict(index))
    )


def inject_runtime(html: str, archive_id: str, index: Mapping[str, str]) -> str:
    soup = BeautifulSoup(html, "lxml")
    for old in soup.select(f"script[{RUNTIME_ATTR}]"):
        old.decompose()
    script = soup.new_tag("script")
    script[RUNTIME_ATTR] = archive_id
    script.string = build_runtime_script(archive_id, index)
    head = soup.head
    if head is None:
        head = soup.new_tag("head")
        if soup.html is not None:
            soup.html.insert(0, head)
        else:
            soup.insert(0, head)
    head.insert(0, script)
    return soup.decode(formatter="html")


def inject_runtime_into_file(path: Union[str, Path], archive_id: str, index: Dict[str, str]) -> None:
    p = Path(path)
    html = p.read_text(encoding="utf-8", errors="ignore")
    p.write_text(inject_runtime(html, archive_id, index), encoding="utf-8")
