"""Scripts injected into provider pages by the extraction engine."""

# Installed before any page script runs: masks the automation flags most
# player pages probe for and records fetch/XHR URLs into window.__reqs.
INIT_SCRIPT = """
(() => {
  try { Object.defineProperty(navigator, 'webdriver', { get: () => undefined }); } catch (e) {}
  try { window.chrome = window.chrome || { runtime: {} }; } catch (e) {}
  try { Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] }); } catch (e) {}
  window.__reqs = [];
  const push = (u) => { try { if (u) window.__reqs.push(String(u)); } catch (e) {} };
  const origFetch = window.fetch;
  if (origFetch) {
    window.fetch = function (input, init) {
      push(typeof input === 'string' ? input : (input && input.url));
      return origFetch.apply(this, arguments);
    };
  }
  const origOpen = XMLHttpRequest.prototype.open;
  XMLHttpRequest.prototype.open = function (method, url) {
    push(url);
    return origOpen.apply(this, arguments);
  };
})();
"""

PLAY_VIDEO_SCRIPT = """
() => {
  const videos = Array.from(document.querySelectorAll('video'));
  videos.forEach((v) => {
    try {
      v.muted = true;
      const p = v.play();
      if (p && p.catch) p.catch(() => {});
    } catch (e) {}
  });
  return videos.length;
}
"""

VIRTUAL_PLAYER_SCRIPT = """
() => {
  let started = 0;
  try {
    if (typeof window.jwplayer === 'function') {
      const p = window.jwplayer();
      if (p && p.play) { if (p.setMute) p.setMute(true); p.play(); started++; }
    }
  } catch (e) {}
  try {
    if (window.videojs && window.videojs.getPlayers) {
      Object.values(window.videojs.getPlayers()).forEach((p) => {
        if (p && p.play) { p.muted(true); p.play(); started++; }
      });
    }
  } catch (e) {}
  try {
    if (window.player && typeof window.player.play === 'function') {
      window.player.muted = true;
      window.player.play();
      started++;
    }
  } catch (e) {}
  return started;
}
"""

READ_RECORDED_REQUESTS_SCRIPT = """
() => (Array.isArray(window.__reqs) ? window.__reqs.slice(-500) : [])
"""
